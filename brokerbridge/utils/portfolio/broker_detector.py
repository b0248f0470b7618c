"""
Broker dialect detection for uploaded position files.

Rules are evaluated in order and the first match wins, so the result only
depends on the headers (and optional first row) passed in.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SupportedBroker(str, Enum):
    ETRADE = "ETRADE"
    FIDELITY = "FIDELITY"
    SCHWAB = "SCHWAB"
    ROBINHOOD = "ROBINHOOD"
    WEBULL = "WEBULL"
    UNKNOWN = "UNKNOWN"


BROKER_DISPLAY_NAMES = {
    SupportedBroker.ETRADE: "E*TRADE",
    SupportedBroker.FIDELITY: "Fidelity",
    SupportedBroker.SCHWAB: "Charles Schwab",
    SupportedBroker.ROBINHOOD: "Robinhood",
    SupportedBroker.WEBULL: "Webull",
    SupportedBroker.UNKNOWN: "Unknown Broker",
}


@dataclass(frozen=True)
class BrokerDetectionResult:
    broker: SupportedBroker
    confidence: str             # 'high', 'medium' or 'low'
    evidence: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'broker': self.broker.value,
            'confidence': self.confidence,
            'evidence': self.evidence,
        }


class _Signature:
    """Lowercased header and first-row text a rule can test against."""

    def __init__(self, headers: List[str], sample_row: Optional[Dict[str, str]]):
        self.headers = '|'.join(h.strip().lower() for h in headers)
        values = sample_row.values() if sample_row else []
        self.row = '|'.join(str(v).strip().lower() for v in values if v is not None)

    def has(self, *fragments: str) -> bool:
        """True when any of the fragments appears in the header line."""
        return any(fragment in self.headers for fragment in fragments)


Rule = Tuple[SupportedBroker, str, str, Callable[[_Signature], bool]]

DETECTION_RULES: Tuple[Rule, ...] = (
    (
        SupportedBroker.ETRADE, 'high',
        "Headers contain E*TRADE-specific columns (Symbol, Qty, Last Price, Price Paid)",
        lambda s: s.has('symbol') and s.has('quantity', 'qty')
        and s.has('last price', 'lastprice') and s.has('price paid', 'pricepaid'),
    ),
    (
        SupportedBroker.FIDELITY, 'high',
        "Headers contain Fidelity-specific columns (Cost Basis Total/Per Share)",
        lambda s: s.has('symbol', 'ticker') and s.has('quantity', 'qty')
        and s.has('last price', 'current value')
        and s.has('cost basis total', 'cost basis per share'),
    ),
    (
        SupportedBroker.FIDELITY, 'medium',
        "File contains 'Fidelity' or Fidelity account metadata",
        lambda s: 'fidelity' in s.row or (s.has('account number') and s.has('account name')),
    ),
    (
        SupportedBroker.SCHWAB, 'medium',
        "Headers suggest Schwab format",
        lambda s: s.has('symbol') and s.has('quantity', 'qty') and s.has('market value', 'price')
        and (s.has('schwab', '% of account', 'reinvest') or 'schwab' in s.row),
    ),
    (
        SupportedBroker.ROBINHOOD, 'medium',
        "Headers contain Robinhood-specific columns (Ticker, Equity, Avg Cost)",
        lambda s: s.has('ticker', 'instrument') and s.has('quantity', 'shares')
        and s.has('average cost', 'avg cost') and s.has('equity'),
    ),
    (
        SupportedBroker.WEBULL, 'medium',
        "Headers contain Webull-specific columns (Stock Code/Name, Holding)",
        lambda s: s.has('stock code', 'stock name')
        or (s.has('symbol') and s.has('holding') and s.has('available')),
    ),
    (
        SupportedBroker.UNKNOWN, 'low',
        "Generic position CSV format detected",
        lambda s: s.has('symbol', 'ticker') and s.has('quantity', 'qty', 'shares')
        and s.has('price', 'value'),
    ),
)


def detect_broker(headers: List[str], sample_row: Optional[Dict[str, str]] = None) -> BrokerDetectionResult:
    """
    Detect which broker produced a position file.

    Args:
        headers: Header row of the position table
        sample_row: Optional first data row, for content-based hints

    Returns:
        BrokerDetectionResult; UNKNOWN/low when nothing broker-specific matches
    """
    signature = _Signature(headers, sample_row)
    for broker, confidence, evidence, matches in DETECTION_RULES:
        if matches(signature):
            logger.debug(f"Detected broker {broker.value} ({confidence}): {evidence}")
            return BrokerDetectionResult(broker=broker, confidence=confidence, evidence=evidence)

    return BrokerDetectionResult(
        broker=SupportedBroker.UNKNOWN,
        confidence='low',
        evidence="Could not match any known broker pattern",
    )


def get_broker_display_name(broker: SupportedBroker) -> str:
    return BROKER_DISPLAY_NAMES.get(broker, BROKER_DISPLAY_NAMES[SupportedBroker.UNKNOWN])


def get_supported_brokers() -> List[Dict[str, str]]:
    """Options for a broker picker."""
    return [
        {'value': broker.value, 'label': "Other / Unknown" if broker == SupportedBroker.UNKNOWN
         else BROKER_DISPLAY_NAMES[broker]}
        for broker in SupportedBroker
    ]
