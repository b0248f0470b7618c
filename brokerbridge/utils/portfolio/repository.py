"""
Persistence contract for BrokerBridge and an in-memory implementation.

The sync orchestrator and the aggregation engine only talk to
PortfolioRepository, so the storage engine can be swapped (Supabase in
production, memory in tests and the CLI).
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from brokerbridge.utils.errors import ConnectionNotFoundError, ProviderError
from brokerbridge.utils.portfolio.models import (
    Account,
    CashBalance,
    Connection,
    ConnectionStatus,
    Instrument,
    PositionSnapshot,
    SyncLog,
)

logger = logging.getLogger(__name__)


class PortfolioRepository(ABC):
    """Storage operations needed by sync and aggregation."""

    # Connections

    @abstractmethod
    def create_connection(self, connection: Connection) -> Connection:
        pass

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    def list_connections(self, org_id: str) -> List[Connection]:
        pass

    @abstractmethod
    def update_connection(self, connection_id: str, **changes) -> Connection:
        """
        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        pass

    @abstractmethod
    def delete_connection(self, connection_id: str) -> bool:
        """Delete a connection with its accounts and their snapshots."""
        pass

    @abstractmethod
    def try_begin_sync(self, connection_id: str) -> bool:
        """
        Atomically move a connection into SYNCING.

        Returns:
            False when a sync already holds the connection
        """
        pass

    # Accounts

    @abstractmethod
    def create_accounts(self, accounts: List[Account]) -> List[Account]:
        pass

    @abstractmethod
    def list_accounts(self, connection_id: str) -> List[Account]:
        pass

    @abstractmethod
    def list_accounts_for_org(self, org_id: str) -> List[Account]:
        pass

    # Instruments

    @abstractmethod
    def get_instrument_by_key(self, key: str) -> Optional[Instrument]:
        pass

    @abstractmethod
    def create_instrument(self, instrument: Instrument) -> Instrument:
        """Insert an instrument, returning the existing row when its key is already present."""
        pass

    @abstractmethod
    def get_instruments(self, instrument_ids: Iterable[str]) -> Dict[str, Instrument]:
        pass

    # Snapshots

    @abstractmethod
    def commit_account_snapshots(self, account_id: str, snapshots: List[PositionSnapshot],
                                 replace_existing: bool, synced_at: datetime,
                                 cash: Optional[CashBalance] = None) -> None:
        """
        Atomically store one account's snapshots (and cash) and stamp its last_synced_at.

        Args:
            replace_existing: Drop the account's previous snapshots and cash balances first
        """
        pass

    @abstractmethod
    def list_snapshots(self, account_ids: Iterable[str],
                       as_of: Optional[datetime] = None) -> List[PositionSnapshot]:
        """All snapshots for the accounts, optionally only those at or before as_of."""
        pass

    @abstractmethod
    def list_cash_balances(self, account_ids: Iterable[str],
                           as_of: Optional[datetime] = None) -> List[CashBalance]:
        pass

    # Sync history

    @abstractmethod
    def create_sync_log(self, log: SyncLog) -> SyncLog:
        pass

    @abstractmethod
    def update_sync_log(self, log_id: str, **changes) -> SyncLog:
        pass

    @abstractmethod
    def list_sync_logs(self, connection_id: str, limit: int = 5) -> List[SyncLog]:
        """Most recent runs first."""
        pass


class InMemoryPortfolioRepository(PortfolioRepository):
    """Thread-safe dictionary-backed repository."""

    def __init__(self):
        self._lock = threading.RLock()
        self._connections: Dict[str, Connection] = {}
        self._accounts: Dict[str, Account] = {}
        self._instruments: Dict[str, Instrument] = {}
        self._instrument_keys: Dict[str, str] = {}
        self._snapshots: Dict[str, List[PositionSnapshot]] = {}
        self._cash: Dict[str, List[CashBalance]] = {}
        self._sync_logs: Dict[str, SyncLog] = {}

    def create_connection(self, connection: Connection) -> Connection:
        with self._lock:
            self._connections[connection.id] = copy.deepcopy(connection)
            return copy.deepcopy(connection)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return copy.deepcopy(connection) if connection else None

    def list_connections(self, org_id: str) -> List[Connection]:
        with self._lock:
            return [
                copy.deepcopy(c) for c in sorted(self._connections.values(), key=lambda c: c.created_at)
                if c.org_id == org_id
            ]

    def update_connection(self, connection_id: str, **changes) -> Connection:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            updated = replace(connection, **changes)
            self._connections[connection_id] = updated
            return copy.deepcopy(updated)

    def delete_connection(self, connection_id: str) -> bool:
        with self._lock:
            if self._connections.pop(connection_id, None) is None:
                return False
            account_ids = [a.id for a in self._accounts.values() if a.connection_id == connection_id]
            for account_id in account_ids:
                self._accounts.pop(account_id, None)
                self._snapshots.pop(account_id, None)
                self._cash.pop(account_id, None)
            for log_id in [i for i, log in self._sync_logs.items() if log.connection_id == connection_id]:
                del self._sync_logs[log_id]
            logger.info(f"🗑️ Deleted connection {connection_id} with {len(account_ids)} accounts")
            return True

    def try_begin_sync(self, connection_id: str) -> bool:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if connection.status == ConnectionStatus.SYNCING:
                return False
            self._connections[connection_id] = replace(connection, status=ConnectionStatus.SYNCING)
            return True

    def create_accounts(self, accounts: List[Account]) -> List[Account]:
        with self._lock:
            for account in accounts:
                self._accounts[account.id] = copy.deepcopy(account)
            return [copy.deepcopy(a) for a in accounts]

    def list_accounts(self, connection_id: str) -> List[Account]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._accounts.values() if a.connection_id == connection_id]

    def list_accounts_for_org(self, org_id: str) -> List[Account]:
        with self._lock:
            connection_ids = {c.id for c in self._connections.values() if c.org_id == org_id}
            return [copy.deepcopy(a) for a in self._accounts.values() if a.connection_id in connection_ids]

    def get_instrument_by_key(self, key: str) -> Optional[Instrument]:
        with self._lock:
            instrument_id = self._instrument_keys.get(key)
            return copy.deepcopy(self._instruments[instrument_id]) if instrument_id else None

    def create_instrument(self, instrument: Instrument) -> Instrument:
        with self._lock:
            existing_id = self._instrument_keys.get(instrument.key)
            if existing_id:
                return copy.deepcopy(self._instruments[existing_id])
            self._instruments[instrument.id] = copy.deepcopy(instrument)
            self._instrument_keys[instrument.key] = instrument.id
            return copy.deepcopy(instrument)

    def get_instruments(self, instrument_ids: Iterable[str]) -> Dict[str, Instrument]:
        with self._lock:
            return {
                instrument_id: copy.deepcopy(self._instruments[instrument_id])
                for instrument_id in set(instrument_ids) if instrument_id in self._instruments
            }

    def commit_account_snapshots(self, account_id: str, snapshots: List[PositionSnapshot],
                                 replace_existing: bool, synced_at: datetime,
                                 cash: Optional[CashBalance] = None) -> None:
        with self._lock:
            if account_id not in self._accounts:
                raise ConnectionNotFoundError(f"Account {account_id} not found")
            existing = [] if replace_existing else self._snapshots.get(account_id, [])
            self._snapshots[account_id] = existing + [copy.deepcopy(s) for s in snapshots]
            balances = [] if replace_existing else self._cash.get(account_id, [])
            self._cash[account_id] = balances + ([copy.deepcopy(cash)] if cash else [])
            self._accounts[account_id] = replace(self._accounts[account_id], last_synced_at=synced_at)

    def list_snapshots(self, account_ids: Iterable[str],
                       as_of: Optional[datetime] = None) -> List[PositionSnapshot]:
        with self._lock:
            result = []
            for account_id in account_ids:
                for snapshot in self._snapshots.get(account_id, []):
                    if as_of is None or snapshot.as_of <= as_of:
                        result.append(copy.deepcopy(snapshot))
            return result

    def list_cash_balances(self, account_ids: Iterable[str],
                           as_of: Optional[datetime] = None) -> List[CashBalance]:
        with self._lock:
            return [
                copy.deepcopy(balance)
                for account_id in account_ids
                for balance in self._cash.get(account_id, [])
                if as_of is None or balance.as_of <= as_of
            ]

    def create_sync_log(self, log: SyncLog) -> SyncLog:
        with self._lock:
            self._sync_logs[log.id] = copy.deepcopy(log)
            return copy.deepcopy(log)

    def update_sync_log(self, log_id: str, **changes) -> SyncLog:
        with self._lock:
            if log_id not in self._sync_logs:
                raise ProviderError(f"Sync log {log_id} not found")
            updated = replace(self._sync_logs[log_id], **changes)
            self._sync_logs[log_id] = updated
            return copy.deepcopy(updated)

    def list_sync_logs(self, connection_id: str, limit: int = 5) -> List[SyncLog]:
        with self._lock:
            logs = [log for log in self._sync_logs.values() if log.connection_id == connection_id]
            logs.sort(key=lambda log: log.started_at, reverse=True)
            return [copy.deepcopy(log) for log in logs[:limit]]
