"""
Broker adapters, file parsers and position aggregation for BrokerBridge.

Every data source implements BrokerAdapter (abstract_provider) so the sync
orchestrator can treat OAuth-connected brokers and uploaded files the same
way. Submodules are imported directly; the package itself re-exports nothing
so that low-level modules such as instrument_parser can import constants
without pulling in the models.
"""
