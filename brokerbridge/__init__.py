"""
BrokerBridge Backend Package

Broker connections (E*TRADE OAuth, CSV and OFX file imports), position
normalization into shared instruments, and cross-broker aggregation.
"""

__version__ = "1.0.0"
