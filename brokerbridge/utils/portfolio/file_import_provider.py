"""
File import adapters (CSV and OFX position downloads).

A file import "connects" without any network call: the uploaded content and
its metadata are sealed in the credential vault and stored on the
connection, and every sync reparses that stored content (or the replacement
supplied with a re-upload).
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from brokerbridge.utils.credential_vault import CredentialVault
from brokerbridge.utils.errors import ParseError, ValidationError
from brokerbridge.utils.portfolio.abstract_provider import (
    BrokerAccount,
    BrokerAdapter,
    ConnectionHandle,
    RawCashPayload,
    RawPositionPayload,
)
from brokerbridge.utils.portfolio.broker_detector import (
    BrokerDetectionResult,
    SupportedBroker,
    detect_broker,
)
from brokerbridge.utils.portfolio.csv_parser import (
    ColumnMapping,
    ParsedCSV,
    get_suggested_mappings,
    infer_column_mapping,
    parse_csv_content,
    parse_position_rows,
    validate_mapping,
)
from brokerbridge.utils.portfolio.models import BrokerKind, ensure_utc, utc_now
from brokerbridge.utils.portfolio.ofx_parser import (
    OFX_COLUMN_MAPPING,
    ParsedOFX,
    looks_like_ofx,
    parse_ofx_positions,
)

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_CSV_ACCOUNT_ID = "CSV_IMPORT"
DEFAULT_OFX_ACCOUNT_ID = "OFX_IMPORT"
ACCOUNT_NUMBER_COLUMNS = ('account number', 'account #', 'account no', 'acct number')
OFX_EXTENSIONS = ('.ofx', '.qfx')


@dataclass
class _LoadedCSV:
    parsed: ParsedCSV
    mapping: ColumnMapping
    detection: BrokerDetectionResult


def is_ofx_upload(file_name: Optional[str], file_content: str) -> bool:
    if file_name and file_name.lower().endswith(OFX_EXTENSIONS):
        return True
    return looks_like_ofx(file_content)


def _file_stem(file_name: str) -> str:
    return os.path.splitext(os.path.basename(file_name))[0] or file_name


def _mask_account_number(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = ''.join(ch for ch in str(value) if ch.isalnum())
    if len(digits) <= 4:
        return f"****{digits}" if digits else None
    return f"****{digits[-4:]}"


def _as_of_from(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if value:
        try:
            return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
        except ValueError:
            raise ValidationError(f"Invalid as_of timestamp: {value!r}")
    return utc_now()


def _require_upload(auth_input: Dict[str, Any]) -> Dict[str, Any]:
    file_content = auth_input.get('file_content')
    file_name = auth_input.get('file_name')
    if not file_content or not isinstance(file_content, str):
        raise ValidationError("File content is required")
    if not file_name:
        raise ValidationError("File name is required")
    if len(file_content.encode('utf-8')) > MAX_FILE_BYTES:
        raise ValidationError(
            f"File exceeds the {MAX_FILE_BYTES // (1024 * 1024)}MB import limit"
        )
    return {
        'file_content': file_content,
        'file_name': file_name,
        'column_mapping': auth_input.get('column_mapping'),
        'account_nickname': auth_input.get('account_nickname'),
        'as_of': _as_of_from(auth_input.get('as_of')).isoformat(),
    }


def _load_csv(stored: Dict[str, Any]) -> _LoadedCSV:
    parsed = parse_csv_content(stored['file_content'])
    if not parsed.headers or not parsed.rows:
        raise ParseError("CSV file contains no data rows")

    detection = detect_broker(parsed.headers, parsed.rows[0])

    if stored.get('column_mapping'):
        mapping = ColumnMapping.from_dict(stored['column_mapping'])
        validate_mapping(parsed.headers, mapping)
    else:
        mapping = infer_column_mapping(parsed.headers)
        if mapping is None:
            raise ParseError(
                "Unable to automatically detect CSV columns. Please provide explicit column mapping.",
                details={'headers': parsed.headers, 'suggested_mappings': get_suggested_mappings(parsed.headers)},
            )

    return _LoadedCSV(parsed=parsed, mapping=mapping, detection=detection)


def _account_number_for(row: Dict[str, str]) -> Optional[str]:
    for header, value in row.items():
        if header and header.strip().lower() in ACCOUNT_NUMBER_COLUMNS and value:
            return value
    return None


def _external_account_id(row: Dict[str, str], column: str) -> str:
    name = (row.get(column) or '').strip()
    return f"{DEFAULT_CSV_ACCOUNT_ID}:{name}" if name else DEFAULT_CSV_ACCOUNT_ID


def _raise_if_nothing_parsed(result, total_rows: int) -> None:
    if not result.rows and result.errors:
        raise ParseError(
            "Failed to parse any positions from file",
            details={
                'total_rows': total_rows,
                'row_errors': [error.to_dict() for error in result.errors[:10]],
            },
        )


class CSVImportAdapter(BrokerAdapter):
    """CSV position exports from E*TRADE, Fidelity, Schwab, Robinhood, Webull or any similar table."""

    broker = BrokerKind.CSV_IMPORT

    def __init__(self, vault: CredentialVault):
        self.vault = vault

    def _handle(self, stored: Dict[str, Any], encrypted_auth: str) -> ConnectionHandle:
        loaded = _load_csv(stored)
        broker_source = None
        if loaded.detection.broker != SupportedBroker.UNKNOWN:
            broker_source = loaded.detection.broker.value
        return ConnectionHandle(
            broker=self.broker,
            encrypted_auth=encrypted_auth,
            auth=stored,
            broker_source=broker_source,
            metadata={
                'loaded': loaded,
                'detection': loaded.detection.to_dict(),
                'column_mapping': loaded.mapping.to_dict(),
            },
        )

    async def authenticate(self, auth_input: Dict[str, Any]) -> ConnectionHandle:
        stored = _require_upload(auth_input)
        handle = self._handle(stored, encrypted_auth='')
        # Persist the mapping that was actually used so re-syncs are stable
        stored['column_mapping'] = handle.metadata['column_mapping']
        handle.encrypted_auth = self.vault.encrypt(stored)

        logger.info(
            f"📄 CSV import loaded: {stored['file_name']} "
            f"({len(handle.metadata['loaded'].parsed.rows)} rows, "
            f"broker={handle.broker_source or 'UNKNOWN'})"
        )
        return handle

    async def resume(self, encrypted_auth: str) -> ConnectionHandle:
        stored = self.vault.decrypt(encrypted_auth)
        return self._handle(stored, encrypted_auth)

    async def list_accounts(self, handle: ConnectionHandle) -> List[BrokerAccount]:
        loaded: _LoadedCSV = handle.metadata['loaded']
        default_nickname = (
            handle.auth.get('account_nickname')
            or (loaded.parsed.account_summary.account_name if loaded.parsed.account_summary else None)
            or _file_stem(handle.auth['file_name'])
        )

        column = loaded.mapping.account_nickname
        if not column:
            return [BrokerAccount(
                external_id=DEFAULT_CSV_ACCOUNT_ID,
                nickname=default_nickname,
                masked_number=_mask_account_number(_account_number_for(loaded.parsed.rows[0])),
                account_type=self.broker.value,
            )]

        accounts: Dict[str, BrokerAccount] = {}
        for row in loaded.parsed.rows:
            name = (row.get(column) or '').strip()
            external_id = _external_account_id(row, column)
            if external_id not in accounts:
                accounts[external_id] = BrokerAccount(
                    external_id=external_id,
                    nickname=name or default_nickname,
                    masked_number=_mask_account_number(_account_number_for(row)),
                    account_type=self.broker.value,
                )
        return list(accounts.values())

    async def fetch_positions(self, handle: ConnectionHandle, account: BrokerAccount) -> RawPositionPayload:
        loaded: _LoadedCSV = handle.metadata['loaded']
        rows = loaded.parsed.rows
        line_numbers = loaded.parsed.line_numbers

        column = loaded.mapping.account_nickname
        if column:
            selected = [
                (row, line) for row, line in zip(rows, line_numbers)
                if _external_account_id(row, column) == account.external_id
            ]
            rows = [row for row, _ in selected]
            line_numbers = [line for _, line in selected]

        result = parse_position_rows(rows, loaded.mapping, line_numbers)
        _raise_if_nothing_parsed(result, len(rows))

        return RawPositionPayload(
            rows=result.rows,
            row_errors=result.errors,
            as_of=_as_of_from(handle.auth.get('as_of')),
            total_rows=result.total_rows,
            metadata={
                'file_name': handle.auth['file_name'],
                'broker_source': handle.broker_source,
            },
        )


class OFXImportAdapter(BrokerAdapter):
    """OFX/QFX investment statement downloads."""

    broker = BrokerKind.OFX_IMPORT

    def __init__(self, vault: CredentialVault):
        self.vault = vault

    def _handle(self, stored: Dict[str, Any], encrypted_auth: str) -> ConnectionHandle:
        parsed = parse_ofx_positions(stored['file_content'])
        if not parsed.rows:
            raise ParseError("OFX statement contains no positions")
        return ConnectionHandle(
            broker=self.broker,
            encrypted_auth=encrypted_auth,
            auth=stored,
            broker_source=parsed.broker_id,
            metadata={'parsed': parsed},
        )

    async def authenticate(self, auth_input: Dict[str, Any]) -> ConnectionHandle:
        stored = _require_upload(auth_input)
        handle = self._handle(stored, encrypted_auth='')
        parsed: ParsedOFX = handle.metadata['parsed']
        if parsed.as_of and not auth_input.get('as_of'):
            stored['as_of'] = parsed.as_of.isoformat()
        handle.encrypted_auth = self.vault.encrypt(stored)

        logger.info(f"📄 OFX import loaded: {stored['file_name']} ({len(parsed.rows)} positions)")
        return handle

    async def resume(self, encrypted_auth: str) -> ConnectionHandle:
        stored = self.vault.decrypt(encrypted_auth)
        return self._handle(stored, encrypted_auth)

    async def list_accounts(self, handle: ConnectionHandle) -> List[BrokerAccount]:
        parsed: ParsedOFX = handle.metadata['parsed']
        return [BrokerAccount(
            external_id=parsed.account_id or DEFAULT_OFX_ACCOUNT_ID,
            nickname=handle.auth.get('account_nickname') or _file_stem(handle.auth['file_name']),
            masked_number=_mask_account_number(parsed.account_id),
            account_type=self.broker.value,
        )]

    async def fetch_positions(self, handle: ConnectionHandle, account: BrokerAccount) -> RawPositionPayload:
        parsed: ParsedOFX = handle.metadata['parsed']
        result = parse_position_rows(parsed.rows, OFX_COLUMN_MAPPING)
        _raise_if_nothing_parsed(result, len(parsed.rows))

        return RawPositionPayload(
            rows=result.rows,
            row_errors=result.errors,
            as_of=_as_of_from(handle.auth.get('as_of')),
            total_rows=result.total_rows,
            metadata={'file_name': handle.auth['file_name'], 'broker_source': handle.broker_source},
        )

    async def fetch_cash(self, handle: ConnectionHandle, account: BrokerAccount) -> RawCashPayload:
        parsed: ParsedOFX = handle.metadata['parsed']
        if parsed.available_cash is None:
            return RawCashPayload(currency=parsed.currency)
        return RawCashPayload(
            total=parsed.available_cash,
            currency=parsed.currency,
            breakdown={'CASH': parsed.available_cash},
        )


def preview_file_import(file_content: str, file_name: str,
                        column_mapping: Optional[Dict[str, Any]] = None,
                        max_rows: int = 10) -> Dict[str, Any]:
    """
    Parse an upload without persisting anything.

    Returns:
        Detected format and broker, headers, suggested mappings, the first
        parsed rows and the row errors across the whole file
    """
    stored = _require_upload({'file_content': file_content, 'file_name': file_name,
                              'column_mapping': column_mapping})

    if is_ofx_upload(file_name, file_content):
        parsed_ofx = parse_ofx_positions(file_content)
        result = parse_position_rows(parsed_ofx.rows, OFX_COLUMN_MAPPING)
        return {
            'format': BrokerKind.OFX_IMPORT.value,
            'detection': None,
            'headers': parsed_ofx.headers,
            'column_mapping': OFX_COLUMN_MAPPING.to_dict(),
            'suggested_mappings': None,
            'total_rows': result.total_rows,
            'valid_rows': len(result.rows),
            'sample_rows': [_preview_row(row) for row in result.rows[:max_rows]],
            'row_errors': [error.to_dict() for error in result.errors],
        }

    loaded = _load_csv(stored)
    result = parse_position_rows(loaded.parsed.rows, loaded.mapping, loaded.parsed.line_numbers)
    return {
        'format': BrokerKind.CSV_IMPORT.value,
        'detection': loaded.detection.to_dict(),
        'headers': loaded.parsed.headers,
        'column_mapping': loaded.mapping.to_dict(),
        'suggested_mappings': get_suggested_mappings(loaded.parsed.headers),
        'total_rows': result.total_rows,
        'valid_rows': len(result.rows),
        'sample_rows': [_preview_row(row) for row in result.rows[:max_rows]],
        'row_errors': [error.to_dict() for error in result.errors],
    }


def _preview_row(row) -> Dict[str, Any]:
    def number(value):
        return float(value) if value is not None else None

    return {
        'row': row.row_number,
        'symbol': row.symbol,
        'quantity': number(row.quantity),
        'average_price': number(row.average_price),
        'cost_basis': number(row.cost_basis),
        'last_price': number(row.last_price),
        'market_value': number(row.market_value),
        'account_nickname': row.account_nickname,
    }
