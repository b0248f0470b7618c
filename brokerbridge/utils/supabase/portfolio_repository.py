"""
Supabase-backed PortfolioRepository.

Tables (see migrations/001_brokerbridge_schema.sql):
- broker_connections
- broker_accounts          (ON DELETE CASCADE from broker_connections)
- instruments              (unique key column)
- position_snapshots       (ON DELETE CASCADE from broker_accounts)
- account_cash_balances    (ON DELETE CASCADE from broker_accounts)
- sync_logs                (ON DELETE CASCADE from broker_connections)

Per-account snapshot commits go through the
brokerbridge_commit_account_snapshots() function so the delete/insert pair
(snapshots and cash balance) runs in one transaction.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from brokerbridge.utils.errors import ConnectionNotFoundError, ProviderError
from brokerbridge.utils.instrument_parser import AssetClass, OptionRight
from brokerbridge.utils.portfolio.models import (
    Account,
    BrokerKind,
    CashBalance,
    Connection,
    ConnectionStatus,
    Instrument,
    PositionSnapshot,
    SyncLog,
    SyncRunResult,
    ensure_utc,
)
from brokerbridge.utils.portfolio.repository import PortfolioRepository
from brokerbridge.utils.supabase.db_client import get_supabase_client

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = "broker_connections"
ACCOUNTS_TABLE = "broker_accounts"
INSTRUMENTS_TABLE = "instruments"
SNAPSHOTS_TABLE = "position_snapshots"
CASH_BALANCES_TABLE = "account_cash_balances"
SYNC_LOGS_TABLE = "sync_logs"
COMMIT_SNAPSHOTS_RPC = "brokerbridge_commit_account_snapshots"


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _connection_from_row(row: Dict[str, Any]) -> Connection:
    return Connection(
        id=row['id'],
        org_id=row['org_id'],
        user_id=row['user_id'],
        broker=BrokerKind(row['broker']),
        status=ConnectionStatus(row['status']),
        encrypted_auth=row['encrypted_auth'],
        broker_source=row.get('broker_source'),
        last_synced_at=_parse_datetime(row.get('last_synced_at')),
        last_error=row.get('last_error'),
        created_at=_parse_datetime(row.get('created_at')),
    )


def _account_from_row(row: Dict[str, Any]) -> Account:
    return Account(
        id=row['id'],
        connection_id=row['connection_id'],
        external_id=row['external_id'],
        nickname=row.get('nickname'),
        masked_number=row.get('masked_number'),
        account_type=row.get('account_type'),
        last_synced_at=_parse_datetime(row.get('last_synced_at')),
    )


def _instrument_from_row(row: Dict[str, Any]) -> Instrument:
    return Instrument(
        id=row['id'],
        key=row['key'],
        symbol=row['symbol'],
        asset_class=AssetClass(row['asset_class']),
        exchange=row.get('exchange'),
        name=row.get('name'),
        currency=row.get('currency') or 'USD',
        underlying_id=row.get('underlying_id'),
        underlying_symbol=row.get('underlying_symbol'),
        strike=_parse_decimal(row.get('strike')),
        expiration=date.fromisoformat(row['expiration']) if row.get('expiration') else None,
        right=OptionRight(row['right']) if row.get('right') else None,
        multiplier=row.get('multiplier'),
    )


def _snapshot_from_row(row: Dict[str, Any]) -> PositionSnapshot:
    return PositionSnapshot(
        id=row['id'],
        account_id=row['account_id'],
        instrument_id=row['instrument_id'],
        generation=row['generation'],
        quantity=_parse_decimal(row['quantity']),
        as_of=_parse_datetime(row['as_of']),
        average_price=_parse_decimal(row.get('average_price')),
        last_price=_parse_decimal(row.get('last_price')),
        market_value=_parse_decimal(row.get('market_value')),
        cost_basis=_parse_decimal(row.get('cost_basis')),
        unrealized_pl=_parse_decimal(row.get('unrealized_pl')),
        currency=row.get('currency') or 'USD',
    )


def _cash_from_row(row: Dict[str, Any]) -> CashBalance:
    return CashBalance(
        account_id=row['account_id'],
        generation=row['generation'],
        as_of=_parse_datetime(row['as_of']),
        total=_parse_decimal(row['total']),
        currency=row.get('currency') or 'USD',
        breakdown={name: _parse_decimal(amount) for name, amount in (row.get('breakdown') or {}).items()},
    )


def _sync_log_from_row(row: Dict[str, Any]) -> SyncLog:
    return SyncLog(
        id=row['id'],
        connection_id=row['connection_id'],
        started_at=_parse_datetime(row['started_at']),
        result=SyncRunResult(row['result']),
        finished_at=_parse_datetime(row.get('finished_at')),
        message=row.get('message'),
    )


def _record_to_row(record: Any) -> Dict[str, Any]:
    return {key: _to_db(value) for key, value in vars(record).items()}


def _cash_to_row(cash: CashBalance) -> Dict[str, Any]:
    row = _record_to_row(cash)
    row['breakdown'] = {name: str(amount) for name, amount in cash.breakdown.items()}
    return row


class SupabasePortfolioRepository(PortfolioRepository):
    """PortfolioRepository over the Supabase REST API."""

    def __init__(self, client=None):
        self.supabase = client or get_supabase_client()

    def _execute(self, action: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Supabase error while {action}: {e}", exc_info=True)
            raise ProviderError(f"Database error while {action}", original_error=e)

    def create_connection(self, connection: Connection) -> Connection:
        result = self._execute(
            "creating connection",
            self.supabase.table(CONNECTIONS_TABLE).insert(_record_to_row(connection)),
        )
        return _connection_from_row(result.data[0]) if result.data else connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        result = self._execute(
            "loading connection",
            self.supabase.table(CONNECTIONS_TABLE).select("*").eq("id", connection_id).limit(1),
        )
        return _connection_from_row(result.data[0]) if result.data else None

    def list_connections(self, org_id: str) -> List[Connection]:
        result = self._execute(
            "listing connections",
            self.supabase.table(CONNECTIONS_TABLE).select("*").eq("org_id", org_id).order("created_at"),
        )
        return [_connection_from_row(row) for row in result.data or []]

    def update_connection(self, connection_id: str, **changes) -> Connection:
        payload = {key: _to_db(value) for key, value in changes.items()}
        result = self._execute(
            "updating connection",
            self.supabase.table(CONNECTIONS_TABLE).update(payload).eq("id", connection_id),
        )
        if not result.data:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return _connection_from_row(result.data[0])

    def delete_connection(self, connection_id: str) -> bool:
        result = self._execute(
            "deleting connection",
            self.supabase.table(CONNECTIONS_TABLE).delete().eq("id", connection_id),
        )
        return bool(result.data)

    def try_begin_sync(self, connection_id: str) -> bool:
        result = self._execute(
            "acquiring sync guard",
            self.supabase.table(CONNECTIONS_TABLE)
            .update({"status": ConnectionStatus.SYNCING.value})
            .eq("id", connection_id)
            .neq("status", ConnectionStatus.SYNCING.value),
        )
        if result.data:
            return True
        if self.get_connection(connection_id) is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return False

    def create_accounts(self, accounts: List[Account]) -> List[Account]:
        if not accounts:
            return []
        result = self._execute(
            "creating accounts",
            self.supabase.table(ACCOUNTS_TABLE).insert([_record_to_row(a) for a in accounts]),
        )
        return [_account_from_row(row) for row in result.data] if result.data else accounts

    def list_accounts(self, connection_id: str) -> List[Account]:
        result = self._execute(
            "listing accounts",
            self.supabase.table(ACCOUNTS_TABLE).select("*").eq("connection_id", connection_id),
        )
        return [_account_from_row(row) for row in result.data or []]

    def list_accounts_for_org(self, org_id: str) -> List[Account]:
        connection_ids = [c.id for c in self.list_connections(org_id)]
        if not connection_ids:
            return []
        result = self._execute(
            "listing organization accounts",
            self.supabase.table(ACCOUNTS_TABLE).select("*").in_("connection_id", connection_ids),
        )
        return [_account_from_row(row) for row in result.data or []]

    def get_instrument_by_key(self, key: str) -> Optional[Instrument]:
        result = self._execute(
            "loading instrument",
            self.supabase.table(INSTRUMENTS_TABLE).select("*").eq("key", key).limit(1),
        )
        return _instrument_from_row(result.data[0]) if result.data else None

    def create_instrument(self, instrument: Instrument) -> Instrument:
        self._execute(
            "creating instrument",
            self.supabase.table(INSTRUMENTS_TABLE).upsert(
                _record_to_row(instrument), on_conflict="key", ignore_duplicates=True
            ),
        )
        return self.get_instrument_by_key(instrument.key) or instrument

    def get_instruments(self, instrument_ids: Iterable[str]) -> Dict[str, Instrument]:
        ids = list(set(instrument_ids))
        if not ids:
            return {}
        result = self._execute(
            "loading instruments",
            self.supabase.table(INSTRUMENTS_TABLE).select("*").in_("id", ids),
        )
        return {row['id']: _instrument_from_row(row) for row in result.data or []}

    def commit_account_snapshots(self, account_id: str, snapshots: List[PositionSnapshot],
                                 replace_existing: bool, synced_at: datetime,
                                 cash: Optional[CashBalance] = None) -> None:
        self._execute(
            "committing snapshots",
            self.supabase.rpc(COMMIT_SNAPSHOTS_RPC, {
                "p_account_id": account_id,
                "p_snapshots": [_record_to_row(s) for s in snapshots],
                "p_replace": replace_existing,
                "p_synced_at": synced_at.isoformat(),
                "p_cash": _cash_to_row(cash) if cash else None,
            }),
        )

    def list_snapshots(self, account_ids: Iterable[str],
                       as_of: Optional[datetime] = None) -> List[PositionSnapshot]:
        ids = list(account_ids)
        if not ids:
            return []
        query = self.supabase.table(SNAPSHOTS_TABLE).select("*").in_("account_id", ids)
        if as_of is not None:
            query = query.lte("as_of", as_of.isoformat())
        result = self._execute("listing snapshots", query)
        return [_snapshot_from_row(row) for row in result.data or []]

    def list_cash_balances(self, account_ids: Iterable[str],
                           as_of: Optional[datetime] = None) -> List[CashBalance]:
        ids = list(account_ids)
        if not ids:
            return []
        query = self.supabase.table(CASH_BALANCES_TABLE).select("*").in_("account_id", ids)
        if as_of is not None:
            query = query.lte("as_of", as_of.isoformat())
        result = self._execute("listing cash balances", query)
        return [_cash_from_row(row) for row in result.data or []]

    def create_sync_log(self, log: SyncLog) -> SyncLog:
        result = self._execute(
            "creating sync log",
            self.supabase.table(SYNC_LOGS_TABLE).insert(_record_to_row(log)),
        )
        return _sync_log_from_row(result.data[0]) if result.data else log

    def update_sync_log(self, log_id: str, **changes) -> SyncLog:
        payload = {key: _to_db(value) for key, value in changes.items()}
        result = self._execute(
            "updating sync log",
            self.supabase.table(SYNC_LOGS_TABLE).update(payload).eq("id", log_id),
        )
        if not result.data:
            raise ProviderError(f"Sync log {log_id} not found")
        return _sync_log_from_row(result.data[0])

    def list_sync_logs(self, connection_id: str, limit: int = 5) -> List[SyncLog]:
        result = self._execute(
            "listing sync logs",
            self.supabase.table(SYNC_LOGS_TABLE).select("*")
            .eq("connection_id", connection_id)
            .order("started_at", desc=True)
            .limit(limit),
        )
        return [_sync_log_from_row(row) for row in result.data or []]
