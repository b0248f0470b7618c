"""
Broker adapter interface for BrokerBridge connections.

Every data source (OAuth-connected broker APIs and file imports alike)
implements BrokerAdapter, so the sync orchestrator never needs to know
where positions came from.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from brokerbridge.utils.errors import RowError
from brokerbridge.utils.portfolio.models import BrokerKind


@dataclass
class ConnectionHandle:
    """Authenticated session with a broker (or a loaded import file)."""
    broker: BrokerKind
    encrypted_auth: str                     # Vault blob to persist on the connection
    auth: Dict[str, Any] = field(default_factory=dict, repr=False)  # Decrypted, in memory only
    broker_source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BrokerAccount:
    """Account as reported by the broker, before it is persisted."""
    external_id: str            # Broker-native id used for follow-up calls
    nickname: Optional[str] = None
    masked_number: Optional[str] = None
    account_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class RawPositionRow:
    """One position row with numerics parsed but the symbol still raw."""
    symbol: str
    quantity: Decimal
    row_number: int
    average_price: Optional[Decimal] = None
    cost_basis: Optional[Decimal] = None
    last_price: Optional[Decimal] = None
    market_value: Optional[Decimal] = None
    unrealized_pl: Optional[Decimal] = None
    account_nickname: Optional[str] = None
    asset_type: Optional[str] = None     # Broker security-type label, if mapped
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RawPositionPayload:
    """Result of fetching one account's positions."""
    rows: List[RawPositionRow]
    row_errors: List[RowError] = field(default_factory=list)
    as_of: Optional[datetime] = None
    total_rows: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RawCashPayload:
    """Cash held in one account, outside of positions."""
    total: Decimal = Decimal('0')
    currency: str = "USD"
    breakdown: Dict[str, Decimal] = field(default_factory=dict)


class BrokerAdapter(ABC):
    """
    Contract every broker integration implements.

    Adapters own the translation between a broker's wire or file format and
    RawPositionRow records. They encrypt auth material through the credential
    vault before it leaves the adapter and decrypt it again on resume().
    """

    broker: BrokerKind

    @abstractmethod
    async def authenticate(self, auth_input: Dict[str, Any]) -> ConnectionHandle:
        """
        Establish a connection from user-supplied auth input.

        Args:
            auth_input: OAuth verifier material or an uploaded file

        Returns:
            ConnectionHandle whose encrypted_auth is ready to persist

        Raises:
            AdapterError: If authentication or file parsing fails
        """
        pass

    @abstractmethod
    async def resume(self, encrypted_auth: str) -> ConnectionHandle:
        """
        Rebuild a handle from a stored vault blob.

        Raises:
            IntegrityError: If the blob cannot be decrypted
        """
        pass

    @abstractmethod
    async def list_accounts(self, handle: ConnectionHandle) -> List[BrokerAccount]:
        """List the accounts reachable through this connection."""
        pass

    @abstractmethod
    async def fetch_positions(self, handle: ConnectionHandle, account: BrokerAccount) -> RawPositionPayload:
        """
        Fetch current positions for one account.

        Raises:
            AuthExpiredError: If the broker rejects the stored tokens
            ProviderError: On upstream failures (retryable)
        """
        pass

    async def fetch_cash(self, handle: ConnectionHandle, account: BrokerAccount) -> RawCashPayload:
        """
        Fetch the account's cash balance.

        Sources without a balance feed report zero cash.
        """
        return RawCashPayload()

    async def close(self) -> None:
        """Release network resources. File adapters hold none."""
        return None

    def get_provider_name(self) -> str:
        return self.broker.value
