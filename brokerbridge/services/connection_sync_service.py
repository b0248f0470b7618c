"""
Connection sync orchestrator.

Creates broker connections, re-syncs them on demand, and turns adapter
output into persisted instruments and position snapshots. Each account is
committed independently, so one failing account never blocks its siblings.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from brokerbridge.utils.config import BrokerBridgeConfig, get_config
from brokerbridge.utils.errors import (
    AdapterError,
    AuthExpiredError,
    ConnectionNotFoundError,
    IntegrityError,
    RowError,
    SyncConflictError,
    UnsupportedBrokerError,
    ValidationError,
    ZeroAccountsError,
)
from brokerbridge.utils.instrument_parser import ParsedInstrument, parse_instrument
from brokerbridge.utils.portfolio.abstract_provider import (
    BrokerAccount,
    BrokerAdapter,
    ConnectionHandle,
    RawCashPayload,
    RawPositionRow,
)
from brokerbridge.utils.portfolio.adapter_registry import AdapterRegistry
from brokerbridge.utils.portfolio.aggregated_calculations import weighted_average_price
from brokerbridge.utils.portfolio.models import (
    Account,
    CashBalance,
    Connection,
    ConnectionStatus,
    Instrument,
    PositionSnapshot,
    SyncLog,
    SyncRunResult,
    ensure_utc,
    utc_now,
)
from brokerbridge.utils.portfolio.repository import PortfolioRepository

logger = logging.getLogger(__name__)

SNAPSHOT_NAMESPACE = uuid.UUID('6f1c1d1e-5b0a-4c55-9a8e-0b4b2f7a9c31')
REAUTH_ERRORS = (AuthExpiredError, IntegrityError)


@dataclass
class SyncOptions:
    replace_snapshot: bool = True           # False appends a new generation and keeps history
    force_refresh: bool = False             # Re-discover accounts from the broker
    skip_instrument_creation: bool = False  # Only use instruments that already exist


@dataclass
class AccountSyncError:
    account_id: str
    external_id: str
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'external_id': self.external_id,
            'code': self.code,
            'message': self.message,
            'retryable': self.retryable,
        }


@dataclass
class SyncResult:
    success: bool
    connection_id: str
    status: ConnectionStatus
    lots_imported: int = 0
    instruments_created: int = 0
    rows_skipped: int = 0
    accounts_synced: int = 0
    row_errors: List[Dict[str, Any]] = field(default_factory=list)
    per_account_errors: List[AccountSyncError] = field(default_factory=list)
    synced_at: Optional[datetime] = None
    cash_total: Decimal = Decimal('0')
    sync_log_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'success': self.success,
            'connection_id': self.connection_id,
            'status': self.status.value,
            'lots_imported': self.lots_imported,
            'instruments_created': self.instruments_created,
            'rows_skipped': self.rows_skipped,
            'accounts_synced': self.accounts_synced,
            'row_errors': self.row_errors,
            'per_account_errors': [e.to_dict() for e in self.per_account_errors],
            'synced_at': self.synced_at.isoformat() if self.synced_at else None,
            'cash_total': float(self.cash_total),
            'sync_log_id': self.sync_log_id,
        }


@dataclass
class _AccountOutcome:
    lots: int = 0
    instruments_created: int = 0
    cash: Decimal = Decimal('0')
    row_errors: List[RowError] = field(default_factory=list)


def _to_broker_account(account: Account) -> BrokerAccount:
    return BrokerAccount(
        external_id=account.external_id,
        nickname=account.nickname,
        masked_number=account.masked_number,
        account_type=account.account_type,
    )


def _instrument_hints(row: RawPositionRow) -> Dict[str, Any]:
    hints = dict(row.raw or {})
    if row.asset_type:
        hints['asset type'] = row.asset_type
    if row.currency:
        hints['currency'] = row.currency
    return hints


def _sum_present(values: List[Optional[Decimal]]) -> Optional[Decimal]:
    present = [v for v in values if v is not None]
    return sum(present, Decimal('0')) if present else None


class ConnectionSyncService:
    """
    Orchestrates connection lifecycle and position syncs.

    Features:
    - Per-connection sync guard (repository compare-and-set plus an in-process set)
    - Per-account isolation and atomic per-account commits
    - Instrument find-or-create with option underlying linkage
    - Deterministic snapshot ids in replace mode
    """

    def __init__(self, repository: PortfolioRepository, registry: AdapterRegistry,
                 config: Optional[BrokerBridgeConfig] = None):
        self.repository = repository
        self.registry = registry
        self.config = config or get_config()
        self.sync_in_progress: Set[str] = set()

    # Connection lifecycle

    async def create_connection(self, org_id: str, user_id: str, broker: str,
                                auth_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Authenticate with the broker and persist the connection with its accounts.

        Returns:
            {'connection_id', 'connection', 'accounts'}

        Raises:
            ZeroAccountsError: If the broker reports no accounts (nothing is persisted)
        """
        if not org_id or not user_id:
            raise ValidationError("org_id and user_id are required")

        adapter = self.registry.get(broker)
        handle = await adapter.authenticate(auth_input or {})
        broker_accounts = await adapter.list_accounts(handle)
        if not broker_accounts:
            raise ZeroAccountsError(f"No accounts found for {adapter.get_provider_name()} connection")

        connection = self.repository.create_connection(Connection(
            id=str(uuid.uuid4()),
            org_id=org_id,
            user_id=user_id,
            broker=adapter.broker,
            status=ConnectionStatus.ACTIVE,
            encrypted_auth=handle.encrypted_auth,
            broker_source=handle.broker_source,
        ))
        accounts = self.repository.create_accounts([
            Account(
                id=str(uuid.uuid4()),
                connection_id=connection.id,
                external_id=ba.external_id,
                nickname=ba.nickname,
                masked_number=ba.masked_number,
                account_type=ba.account_type,
            )
            for ba in broker_accounts
        ])

        logger.info(
            f"🔗 Created {adapter.get_provider_name()} connection {connection.id} for org {org_id} "
            f"with {len(accounts)} accounts"
        )
        return {
            'connection_id': connection.id,
            'connection': connection.to_dict(),
            'accounts': [a.to_dict() for a in accounts],
        }

    async def begin_authorization(self, broker: str, callback_url: Optional[str] = None) -> Dict[str, str]:
        """Start an OAuth handshake for brokers that need one."""
        adapter = self.registry.get(broker)
        begin = getattr(adapter, 'begin_authorization', None)
        if begin is None:
            raise UnsupportedBrokerError(f"{adapter.get_provider_name()} does not use OAuth authorization")
        return await begin(callback_url or self.config.etrade_callback_url)

    def _get_owned_connection(self, connection_id: str, user_id: Optional[str] = None) -> Connection:
        connection = self.repository.get_connection(connection_id)
        # Another user's connection looks the same as a missing one
        if connection is None or (user_id is not None and connection.user_id != user_id):
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def get_connection(self, connection_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        connection = self._get_owned_connection(connection_id, user_id)
        data = connection.to_dict()
        data['accounts'] = [a.to_dict() for a in self.repository.list_accounts(connection_id)]
        return data

    def list_connections(self, org_id: str) -> List[Dict[str, Any]]:
        results = []
        for connection in self.repository.list_connections(org_id):
            data = connection.to_dict()
            data['accounts'] = [a.to_dict() for a in self.repository.list_accounts(connection.id)]
            results.append(data)
        return results

    def delete_connection(self, connection_id: str, user_id: str) -> bool:
        """Delete a connection with its accounts and snapshots. Instruments are kept."""
        self._get_owned_connection(connection_id, user_id)
        if connection_id in self.sync_in_progress:
            raise SyncConflictError(f"Connection {connection_id} is currently syncing")
        deleted = self.repository.delete_connection(connection_id)
        logger.info(f"🗑️ Connection {connection_id} deleted by user {user_id}")
        return deleted

    async def reconnect_connection(self, connection_id: str, user_id: str,
                                   auth_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Re-authenticate a connection (typically after it became DEGRADED).

        Also releases a SYNCING status left behind by a crashed process.
        """
        connection = self._get_owned_connection(connection_id, user_id)
        if connection_id in self.sync_in_progress:
            raise SyncConflictError(f"Connection {connection_id} is currently syncing")

        adapter = self.registry.get(connection.broker)
        handle = await adapter.authenticate(auth_input or {})
        updated = self.repository.update_connection(
            connection_id,
            encrypted_auth=handle.encrypted_auth,
            broker_source=handle.broker_source or connection.broker_source,
            status=ConnectionStatus.ACTIVE,
            last_error=None,
        )
        logger.info(f"🔄 Connection {connection_id} re-authenticated")
        return updated.to_dict()

    def get_sync_status(self, connection_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        connection = self._get_owned_connection(connection_id, user_id)
        accounts = self.repository.list_accounts(connection_id)
        recent_syncs = self.repository.list_sync_logs(connection_id, limit=self.config.sync_history_limit)
        return {
            'connection_id': connection.id,
            'status': connection.status.value,
            'syncing': connection_id in self.sync_in_progress or connection.status == ConnectionStatus.SYNCING,
            'needs_reauth': connection.status == ConnectionStatus.DEGRADED,
            'last_synced_at': connection.last_synced_at.isoformat() if connection.last_synced_at else None,
            'last_error': connection.last_error,
            'accounts': [
                {
                    'account_id': a.id,
                    'nickname': a.nickname,
                    'last_synced_at': a.last_synced_at.isoformat() if a.last_synced_at else None,
                }
                for a in accounts
            ],
            'recent_syncs': [log.to_dict() for log in recent_syncs],
        }

    # Sync

    async def sync_connection(self, connection_id: str, options: Optional[SyncOptions] = None,
                              auth_input: Optional[Dict[str, Any]] = None,
                              user_id: Optional[str] = None) -> SyncResult:
        """
        Pull positions for every account on a connection and commit snapshots.

        Args:
            options: Sync options (replace mode by default)
            auth_input: Replacement upload for file connections; the new blob
                is stored on the connection
            user_id: When given, the connection must belong to this user

        Raises:
            SyncConflictError: If the connection is already syncing
            ConnectionNotFoundError: If the connection does not exist
        """
        options = options or SyncOptions()
        connection = self._get_owned_connection(connection_id, user_id)

        if connection_id in self.sync_in_progress:
            raise SyncConflictError(f"Sync already in progress for connection {connection_id}")
        self.sync_in_progress.add(connection_id)
        try:
            if not self.repository.try_begin_sync(connection_id):
                raise SyncConflictError(f"Sync already in progress for connection {connection_id}")

            result: Optional[SyncResult] = None
            error: Optional[Exception] = None
            sync_log: Optional[SyncLog] = None
            try:
                sync_log = self._start_sync_log(connection_id)
                result = await self._run_sync(connection, options, auth_input)
                result.sync_log_id = sync_log.id if sync_log else None
                return result
            except Exception as e:
                error = e
                raise
            finally:
                # Covers cancellation as well as errors
                if result is None:
                    self._release_sync_guard(connection_id)
                self._finish_sync_log(sync_log, result, error)
        finally:
            self.sync_in_progress.discard(connection_id)

    def _release_sync_guard(self, connection_id: str) -> None:
        """Move a connection out of SYNCING after a sync that did not finish."""
        try:
            current = self.repository.get_connection(connection_id)
            if current is not None and current.status == ConnectionStatus.SYNCING:
                self.repository.update_connection(connection_id, status=ConnectionStatus.ACTIVE)
                logger.warning(f"⚠️ Released sync guard on connection {connection_id} after an aborted sync")
        except Exception as e:
            logger.error(f"❌ Could not release sync guard on connection {connection_id}: {e}", exc_info=True)

    def _start_sync_log(self, connection_id: str) -> Optional[SyncLog]:
        try:
            return self.repository.create_sync_log(SyncLog(
                id=str(uuid.uuid4()), connection_id=connection_id, started_at=utc_now(),
            ))
        except AdapterError as e:
            logger.warning(f"⚠️ Could not record sync start for connection {connection_id}: {e.message}")
            return None

    def _finish_sync_log(self, sync_log: Optional[SyncLog], result: Optional[SyncResult],
                         error: Optional[Exception]) -> None:
        if sync_log is None:
            return

        if result is None:
            outcome = SyncRunResult.ERROR
            if isinstance(error, AdapterError):
                message = f"{error.code}: {error.message}"
            else:
                message = str(error) if error else "Sync interrupted"
        else:
            if result.success:
                outcome = SyncRunResult.SUCCESS
            elif result.accounts_synced:
                outcome = SyncRunResult.PARTIAL
            else:
                outcome = SyncRunResult.ERROR
            message = (
                f"Synced {result.accounts_synced} accounts, {result.lots_imported} lots, "
                f"{result.instruments_created} new instruments"
            )
            if result.per_account_errors:
                message += f"; {len(result.per_account_errors)} accounts failed"

        try:
            self.repository.update_sync_log(sync_log.id, result=outcome, finished_at=utc_now(), message=message)
        except AdapterError as e:
            logger.warning(f"⚠️ Could not record sync result {sync_log.id}: {e.message}")

    async def _run_sync(self, connection: Connection, options: SyncOptions,
                        auth_input: Optional[Dict[str, Any]]) -> SyncResult:
        synced_at = utc_now()
        logger.info(f"🔄 Syncing connection {connection.id} ({connection.broker.value})")

        try:
            adapter = self.registry.get(connection.broker)
            handle = await self._open_handle(adapter, connection, auth_input)
            accounts = await self._accounts_to_sync(adapter, handle, connection,
                                                    rediscover=options.force_refresh or bool(auth_input))
        except AdapterError as e:
            status = ConnectionStatus.DEGRADED if isinstance(e, REAUTH_ERRORS) else ConnectionStatus.ACTIVE
            self.repository.update_connection(connection.id, status=status, last_error=e.message)
            logger.error(f"❌ Sync of connection {connection.id} failed: {e.code} {e.message}")
            raise
        except Exception as e:
            self.repository.update_connection(connection.id, status=ConnectionStatus.ACTIVE, last_error=str(e))
            logger.error(f"❌ Unexpected error syncing connection {connection.id}: {e}", exc_info=True)
            raise

        result = SyncResult(success=True, connection_id=connection.id, status=ConnectionStatus.ACTIVE)
        instrument_cache: Dict[str, Instrument] = {}
        row_errors: List[Dict[str, Any]] = []
        needs_reauth = False

        for account in accounts:
            try:
                outcome = await self._sync_account(adapter, handle, account, options, instrument_cache, synced_at)
            except AdapterError as e:
                needs_reauth = needs_reauth or isinstance(e, REAUTH_ERRORS)
                result.per_account_errors.append(AccountSyncError(
                    account_id=account.id, external_id=account.external_id,
                    code=e.code, message=e.message, retryable=e.retryable,
                ))
                for detail in e.details.get('row_errors', []):
                    row_errors.append({**detail, 'account_id': account.id})
                logger.warning(f"⚠️ Account {account.id} failed during sync: {e.code} {e.message}")
                continue
            except Exception as e:
                result.per_account_errors.append(AccountSyncError(
                    account_id=account.id, external_id=account.external_id,
                    code="UNEXPECTED_ERROR", message=str(e),
                ))
                logger.error(f"❌ Unexpected error syncing account {account.id}: {e}", exc_info=True)
                continue

            result.accounts_synced += 1
            result.lots_imported += outcome.lots
            result.instruments_created += outcome.instruments_created
            result.cash_total += outcome.cash
            result.rows_skipped += len(outcome.row_errors)
            row_errors.extend({**error.to_dict(), 'account_id': account.id} for error in outcome.row_errors)

        result.row_errors = row_errors[:self.config.max_row_errors]
        result.success = not result.per_account_errors
        result.status = ConnectionStatus.DEGRADED if needs_reauth else ConnectionStatus.ACTIVE

        changes: Dict[str, Any] = {
            'status': result.status,
            'last_error': result.per_account_errors[0].message if result.per_account_errors else None,
        }
        if result.accounts_synced:
            changes['last_synced_at'] = synced_at
            result.synced_at = synced_at
        self.repository.update_connection(connection.id, **changes)

        logger.info(
            f"✅ Sync of connection {connection.id} finished: {result.lots_imported} lots, "
            f"{result.instruments_created} new instruments, {result.rows_skipped} rows skipped, "
            f"{len(result.per_account_errors)} account errors"
        )
        return result

    async def _open_handle(self, adapter: BrokerAdapter, connection: Connection,
                           auth_input: Optional[Dict[str, Any]]) -> ConnectionHandle:
        if not auth_input:
            return await adapter.resume(connection.encrypted_auth)

        handle = await adapter.authenticate(auth_input)
        self.repository.update_connection(
            connection.id,
            encrypted_auth=handle.encrypted_auth,
            broker_source=handle.broker_source or connection.broker_source,
        )
        return handle

    async def _accounts_to_sync(self, adapter: BrokerAdapter, handle: ConnectionHandle,
                                connection: Connection, rediscover: bool) -> List[Account]:
        stored = self.repository.list_accounts(connection.id)
        if stored and not rediscover:
            return stored

        broker_accounts = await adapter.list_accounts(handle)
        if not broker_accounts:
            raise ZeroAccountsError(f"No accounts found for connection {connection.id}")

        known = {a.external_id: a for a in stored}
        new_accounts = [
            Account(
                id=str(uuid.uuid4()),
                connection_id=connection.id,
                external_id=ba.external_id,
                nickname=ba.nickname,
                masked_number=ba.masked_number,
                account_type=ba.account_type,
            )
            for ba in broker_accounts if ba.external_id not in known
        ]
        if new_accounts:
            logger.info(f"🆕 Discovered {len(new_accounts)} new accounts on connection {connection.id}")
            for account in self.repository.create_accounts(new_accounts):
                known[account.external_id] = account

        return [known[ba.external_id] for ba in broker_accounts]

    async def _sync_account(self, adapter: BrokerAdapter, handle: ConnectionHandle, account: Account,
                            options: SyncOptions, instrument_cache: Dict[str, Instrument],
                            synced_at: datetime) -> _AccountOutcome:
        payload = await adapter.fetch_positions(handle, _to_broker_account(account))
        as_of = ensure_utc(payload.as_of) or synced_at
        outcome = _AccountOutcome(row_errors=list(payload.row_errors))

        grouped: Dict[str, Tuple[Instrument, List[RawPositionRow]]] = {}
        for row in payload.rows:
            parsed = parse_instrument(row.symbol, handle.broker_source, _instrument_hints(row))
            if not parsed.symbol:
                outcome.row_errors.append(RowError(row=row.row_number, value=row.symbol, reason="Empty symbol"))
                continue
            for warning in parsed.warnings:
                logger.debug(f"Row {row.row_number} ({row.symbol}): {warning}")

            instrument, created = self._resolve_instrument(
                parsed, instrument_cache, allow_create=not options.skip_instrument_creation
            )
            outcome.instruments_created += created
            if instrument is None:
                outcome.row_errors.append(RowError(
                    row=row.row_number, value=row.symbol,
                    reason=f"Unknown instrument '{parsed.symbol}'",
                ))
                continue

            grouped.setdefault(instrument.id, (instrument, []))[1].append(row)

        if options.replace_snapshot:
            generation = str(uuid.uuid5(SNAPSHOT_NAMESPACE, f"{account.id}:{as_of.isoformat()}"))
        else:
            generation = str(uuid.uuid4())

        snapshots = [
            self._build_snapshot(account, instrument, rows, generation, as_of, deterministic=options.replace_snapshot)
            for instrument, rows in grouped.values()
        ]
        cash = await self._fetch_cash(adapter, handle, account)
        balance = None
        if cash is not None:
            balance = CashBalance(
                account_id=account.id, generation=generation, as_of=as_of,
                total=cash.total, currency=cash.currency, breakdown=dict(cash.breakdown),
            )
            outcome.cash = cash.total

        self.repository.commit_account_snapshots(
            account.id, snapshots, replace_existing=options.replace_snapshot, synced_at=synced_at, cash=balance
        )
        outcome.lots = len(snapshots)

        logger.info(
            f"📊 Account {account.id}: {len(snapshots)} positions committed, "
            f"{len(outcome.row_errors)} rows skipped"
        )
        return outcome

    async def _fetch_cash(self, adapter: BrokerAdapter, handle: ConnectionHandle,
                          account: Account) -> Optional[RawCashPayload]:
        try:
            return await adapter.fetch_cash(handle, _to_broker_account(account))
        except REAUTH_ERRORS:
            raise
        except AdapterError as e:
            logger.warning(f"⚠️ Cash balance unavailable for account {account.id}: {e.code} {e.message}")
            return None

    def _resolve_instrument(self, parsed: ParsedInstrument, cache: Dict[str, Instrument],
                            allow_create: bool) -> Tuple[Optional[Instrument], int]:
        """
        Find or create the shared instrument for a parsed symbol.

        Returns:
            (instrument or None, number of instruments created including an option's underlying)
        """
        key = parsed.key
        if key in cache:
            return cache[key], 0

        existing = self.repository.get_instrument_by_key(key)
        if existing is not None:
            cache[key] = existing
            return existing, 0
        if not allow_create:
            return None, 0

        created = 0
        underlying_id = None
        if parsed.is_option and parsed.underlying_symbol:
            underlying, created = self._resolve_instrument(
                parse_instrument(parsed.underlying_symbol), cache, allow_create
            )
            underlying_id = underlying.id if underlying else None

        candidate = Instrument(
            id=str(uuid.uuid4()),
            key=key,
            symbol=parsed.symbol,
            asset_class=parsed.asset_class,
            exchange=parsed.exchange,
            name=parsed.name,
            currency=parsed.currency,
            underlying_id=underlying_id,
            underlying_symbol=parsed.underlying_symbol,
            strike=parsed.strike,
            expiration=parsed.expiration,
            right=parsed.right,
            multiplier=parsed.multiplier,
        )
        stored = self.repository.create_instrument(candidate)
        if stored.id == candidate.id:
            created += 1
            logger.debug(f"Created instrument {stored.key} ({stored.asset_class.value})")
        cache[key] = stored
        return stored, created

    @staticmethod
    def _build_snapshot(account: Account, instrument: Instrument, rows: List[RawPositionRow],
                        generation: str, as_of: datetime, deterministic: bool) -> PositionSnapshot:
        """Merge every row for one instrument in one account into a single snapshot."""
        quantity = sum((row.quantity for row in rows), Decimal('0'))
        cost_basis = _sum_present([row.cost_basis for row in rows])
        market_value = _sum_present([row.market_value for row in rows])

        average_price = None
        if any(row.average_price is not None for row in rows):
            average_price = weighted_average_price((row.quantity, row.average_price) for row in rows)

        last_price = None
        for row in rows:
            if row.last_price is not None:
                last_price = row.last_price

        if market_value is not None and cost_basis is not None:
            unrealized_pl = market_value - cost_basis
        else:
            unrealized_pl = _sum_present([row.unrealized_pl for row in rows])

        if deterministic:
            snapshot_id = str(uuid.uuid5(SNAPSHOT_NAMESPACE, f"{account.id}:{instrument.id}"))
        else:
            snapshot_id = str(uuid.uuid4())

        return PositionSnapshot(
            id=snapshot_id,
            account_id=account.id,
            instrument_id=instrument.id,
            generation=generation,
            quantity=quantity,
            as_of=as_of,
            average_price=average_price,
            last_price=last_price,
            market_value=market_value,
            cost_basis=cost_basis,
            unrealized_pl=unrealized_pl,
            currency=instrument.currency,
        )
