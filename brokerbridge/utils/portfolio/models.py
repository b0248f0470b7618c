"""
Persisted BrokerBridge records.

Connections own accounts, accounts own position snapshots, and instruments
are shared across every connection in the system.
"""

from dataclasses import dataclass, asdict, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from brokerbridge.utils.instrument_parser import AssetClass, OptionRight


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without a zone are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class BrokerKind(str, Enum):
    """How a connection gets its data."""
    CSV_IMPORT = "CSV_IMPORT"
    OFX_IMPORT = "OFX_IMPORT"
    ETRADE = "ETRADE"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"           # Needs re-authentication
    DISCONNECTED = "DISCONNECTED"
    SYNCING = "SYNCING"             # Sync guard held


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _to_dict(record: Any) -> Dict[str, Any]:
    return {key: _serialize(value) for key, value in asdict(record).items()}


@dataclass
class Connection:
    id: str
    org_id: str
    user_id: str
    broker: BrokerKind
    status: ConnectionStatus
    encrypted_auth: str                     # Vault blob, never decrypted outside adapters
    broker_source: Optional[str] = None     # Detected file dialect, e.g. "FIDELITY"
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = _to_dict(self)
        if not include_secrets:
            data.pop('encrypted_auth', None)
        return data


@dataclass
class Account:
    id: str
    connection_id: str
    external_id: str                        # Broker-native account id / key
    nickname: Optional[str] = None
    masked_number: Optional[str] = None
    account_type: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _to_dict(self)


@dataclass
class Instrument:
    """Globally shared instrument; immutable once created."""
    id: str
    key: str                                # Dedupe key, see build_instrument_key
    symbol: str
    asset_class: AssetClass
    exchange: Optional[str] = None
    name: Optional[str] = None
    currency: str = "USD"
    underlying_id: Optional[str] = None
    underlying_symbol: Optional[str] = None
    strike: Optional[Decimal] = None
    expiration: Optional[date] = None
    right: Optional[OptionRight] = None
    multiplier: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _to_dict(self)


@dataclass
class PositionSnapshot:
    """One account's holding of one instrument as of a sync."""
    id: str
    account_id: str
    instrument_id: str
    generation: str                         # Shared by every snapshot of one account sync
    quantity: Decimal
    as_of: datetime
    average_price: Optional[Decimal] = None
    last_price: Optional[Decimal] = None
    market_value: Optional[Decimal] = None
    cost_basis: Optional[Decimal] = None
    unrealized_pl: Optional[Decimal] = None
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _to_dict(self)


@dataclass
class CashBalance:
    """An account's cash as of a sync, stored under the same generation as its snapshots."""
    account_id: str
    generation: str
    as_of: datetime
    total: Decimal
    currency: str = "USD"
    breakdown: Dict[str, Decimal] = field(default_factory=dict)     # e.g. {"CASH": ..., "MONEY_MARKET": ...}

    def to_dict(self) -> Dict[str, Any]:
        data = _to_dict(self)
        data['breakdown'] = {name: float(amount) for name, amount in self.breakdown.items()}
        return data


class SyncRunResult(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"             # Some accounts failed
    ERROR = "ERROR"


@dataclass
class SyncLog:
    """History record for one sync run of a connection."""
    id: str
    connection_id: str
    started_at: datetime
    result: SyncRunResult = SyncRunResult.RUNNING
    finished_at: Optional[datetime] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _to_dict(self)
