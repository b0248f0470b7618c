"""
CSV ingestion for broker position exports.

Broker exports are rarely a clean table: E*TRADE prepends an account summary
section, Fidelity appends disclaimers, most brokers add a totals line. This
module finds the position table, infers which column holds which field and
turns each row into a RawPositionRow, collecting per-row errors instead of
failing the whole file.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field, fields, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from brokerbridge.utils.errors import ParseError, RowError, ValidationError
from brokerbridge.utils.portfolio.abstract_provider import RawPositionRow
from brokerbridge.utils.portfolio.constants import EMPTY_NUMERIC_VALUES, FOOTER_PREFIXES

logger = logging.getLogger(__name__)


@dataclass
class ColumnMapping:
    """Which source column holds each position field."""
    symbol: str
    quantity: str
    average_price: Optional[str] = None
    cost_basis: Optional[str] = None
    last_price: Optional[str] = None
    market_value: Optional[str] = None
    unrealized_pl: Optional[str] = None
    account_nickname: Optional[str] = None
    asset_class: Optional[str] = None
    currency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, dropping unmapped fields."""
        return {key: value for key, value in asdict(self).items() if value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnMapping':
        """
        Build a mapping from user input, accepting snake_case or camelCase keys.

        Raises:
            ValidationError: If symbol or quantity is missing
        """
        known = {f.name for f in fields(cls)}
        normalized = {}
        for key, value in (data or {}).items():
            name = CAMEL_CASE_ALIASES.get(key, key)
            if name in known and value:
                normalized[name] = str(value)

        missing = [name for name in REQUIRED_FIELDS if name not in normalized]
        if missing:
            raise ValidationError(
                f"Column mapping is missing required fields: {', '.join(missing)}",
                details={'missing_fields': missing},
            )
        return cls(**normalized)


CAMEL_CASE_ALIASES = {
    'averagePrice': 'average_price',
    'costBasis': 'cost_basis',
    'lastPrice': 'last_price',
    'marketValue': 'market_value',
    'unrealizedPL': 'unrealized_pl',
    'accountNickname': 'account_nickname',
    'assetClass': 'asset_class',
}

REQUIRED_FIELDS = ('symbol', 'quantity')

# Exact header synonyms per field, in priority order (headers normalized first)
COLUMN_SYNONYMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('symbol', ('symbol', 'ticker', 'stock', 'instrument', 'security', 'stock code', 'symbol/cusip')),
    ('quantity', ('quantity', 'qty', 'shares', 'position', 'units', 'holding', 'holdings', 'amount')),
    ('average_price', (
        'average price', 'avg price', 'average cost', 'avg cost', 'average cost basis',
        'cost basis per share', 'avg cost per share', 'price paid', 'unit cost',
    )),
    ('cost_basis', ('cost basis', 'cost basis total', 'total cost basis', 'total cost', 'book value', 'basis')),
    ('last_price', ('last price', 'current price', 'market price', 'last trade', 'quote', 'price', 'last')),
    ('market_value', ('market value', 'current value', 'total value', 'value', 'equity')),
    ('unrealized_pl', (
        'unrealized pl', 'unrealized p&l', 'unrealized gain', 'unrealized gain/loss',
        'total gain', 'total gain/loss dollar', 'total gain/loss', 'gain/loss', 'p&l', 'pnl', 'p/l',
    )),
    ('account_nickname', ('account name', 'account nickname', 'sub account', 'account')),
    ('asset_class', ('asset class', 'asset type', 'security type', 'instrument type', 'product type')),
    ('currency', ('currency', 'ccy', 'curr')),
)

# Substring fallbacks, only for the core position fields
COLUMN_SUBSTRINGS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('symbol', ('symbol', 'ticker')),
    ('quantity', ('quantity', 'qty', 'shares')),
    ('average_price', ('average cost', 'avg cost', 'average price', 'avg price', 'price paid')),
    ('cost_basis', ('cost basis', 'total cost')),
    ('last_price', ('last price', 'current price', 'market price')),
    ('market_value', ('market value', 'current value')),
)

MANUAL_MAPPING_FIELDS = (
    {'field': 'symbol', 'label': 'Symbol/Ticker', 'required': True},
    {'field': 'quantity', 'label': 'Quantity', 'required': True},
    {'field': 'average_price', 'label': 'Average Price', 'required': False},
    {'field': 'cost_basis', 'label': 'Cost Basis', 'required': False},
    {'field': 'last_price', 'label': 'Last Price', 'required': False},
    {'field': 'market_value', 'label': 'Market Value', 'required': False},
    {'field': 'unrealized_pl', 'label': 'Unrealized P&L / Total Gain', 'required': False},
    {'field': 'account_nickname', 'label': 'Account Name/Nickname', 'required': False},
    {'field': 'asset_class', 'label': 'Asset Class', 'required': False},
    {'field': 'currency', 'label': 'Currency', 'required': False},
)

NUMERIC_FIELDS = ('average_price', 'cost_basis', 'last_price', 'market_value', 'unrealized_pl')

METADATA_PATTERNS = (
    re.compile(r'^account\s*(summary|info|details)', re.I),
    re.compile(r'^view\s*summary', re.I),
    re.compile(r'^filters?\s*applied', re.I),
    re.compile(r'^(generated|downloaded|exported)\s*(at|on)', re.I),
    re.compile(r'^sort\s*(by|order)', re.I),
    re.compile(r'^positions?\s*(for|as of)', re.I),
)
HEADER_SYMBOL_PATTERN = re.compile(r'symbol|ticker|stock|security|instrument', re.I)
HEADER_QUANTITY_PATTERN = re.compile(r'quantity|qty|shares|position|units|holding', re.I)
HEADER_VALUE_PATTERN = re.compile(r'value|price|cost|basis', re.I)

CURRENCY_SYMBOLS = ('$', '€', '£', '¥')


@dataclass
class AccountSummary:
    account_name: Optional[str] = None
    net_account_value: Optional[Decimal] = None
    total_gain: Optional[Decimal] = None
    total_gain_percent: Optional[Decimal] = None


@dataclass
class ParsedCSV:
    headers: List[str]
    rows: List[Dict[str, str]]
    line_numbers: List[int] = field(default_factory=list)     # Source line of each row
    account_summary: Optional[AccountSummary] = None


@dataclass
class RowParseResult:
    rows: List[RawPositionRow]
    errors: List[RowError]
    total_rows: int


def normalize_header(header: str) -> str:
    """Lowercase, collapse separators and drop trailing unit markers ("Qty #" -> "qty")."""
    text = (header or '').strip().lower()
    text = text.replace('(s)', '')
    text = re.sub(r'[_\-]+', ' ', text)
    text = re.sub(r'\s*[$#]\s*$', '', text)
    return ' '.join(text.split())


def parse_numeric(value: Any) -> Optional[Decimal]:
    """
    Parse a broker-formatted number.

    Handles thousands separators, currency symbols and accounting-style
    negatives "(1,234.50)". Blank, "--" and "N/A" mean absent.

    Raises:
        ValueError: If the value is present but not a number
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    text = str(value).strip()
    if text.lower() in EMPTY_NUMERIC_VALUES:
        return None

    negative = False
    if text.startswith('(') and text.endswith(')'):
        negative = True
        text = text[1:-1].strip()

    for symbol in CURRENCY_SYMBOLS:
        text = text.replace(symbol, '')
    text = text.replace(',', '').replace(' ', '')
    if text.startswith('+'):
        text = text[1:]

    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"Invalid number: {value!r}")

    return -number if negative else number


def _looks_like_metadata(values: List[str]) -> bool:
    if not any(values):
        return True
    first = values[0]
    return any(pattern.match(first) for pattern in METADATA_PATTERNS)


def _looks_like_position_header(values: List[str]) -> bool:
    text = ','.join(values)
    has_symbol = bool(HEADER_SYMBOL_PATTERN.search(text))
    has_quantity = bool(HEADER_QUANTITY_PATTERN.search(text))
    has_value = bool(HEADER_VALUE_PATTERN.search(text))
    return has_symbol and (has_quantity or has_value)


def _is_footer(values: List[str]) -> bool:
    first = values[0].strip().lower() if values else ''
    return first.startswith(FOOTER_PREFIXES)


def _read_records(content: str, keep_blank: bool = False) -> List[Tuple[int, List[str]]]:
    if content.startswith("\ufeff"):
        content = content[1:]

    records = []
    reader = csv.reader(io.StringIO(content))
    try:
        for values in reader:
            values = [value.strip() for value in values]
            if not any(values):
                if keep_blank:
                    records.append((reader.line_num, []))
                continue
            records.append((reader.line_num, values))
    except csv.Error as e:
        raise ParseError(f"Malformed CSV content: {e}", original_error=e)
    return records


def _summary_number(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return parse_numeric(value.replace('%', ''))
    except ValueError:
        logger.debug(f"Ignoring non-numeric account summary value {value!r}")
        return None


def _extract_account_summary(records: List[Tuple[int, List[str]]]) -> Optional[AccountSummary]:
    for index, (_, values) in enumerate(records[:10]):
        if not re.match(r'^account\s*summary', values[0], re.I):
            continue
        if index + 2 >= len(records):
            return None

        headers = [normalize_header(h) for h in records[index + 1][1]]
        data = records[index + 2][1]

        def value_for(*names: str) -> Optional[str]:
            for name in names:
                if name in headers:
                    position = headers.index(name)
                    if position < len(data):
                        return data[position]
            return None

        summary = AccountSummary(
            account_name=value_for('account') or None,
            net_account_value=_summary_number(value_for('net account value')),
            total_gain=_summary_number(value_for('total gain')),
            total_gain_percent=_summary_number(value_for('total gain %')),
        )
        if any(getattr(summary, f.name) is not None for f in fields(summary)):
            return summary
        return None
    return None


def parse_csv_content(content: str) -> ParsedCSV:
    """
    Parse broker CSV content into a header list and row dicts.

    Skips preamble and metadata sections, locates the position header line,
    stops at footer lines or the first blank line after the table. Rows that
    are cut short keep only the columns they have so the row parser can
    reject them.
    """
    all_records = _read_records(content or '', keep_blank=True)
    records = [record for record in all_records if record[1]]
    if not records:
        return ParsedCSV(headers=[], rows=[])

    account_summary = _extract_account_summary(records)

    header_index = None
    for index, (_, values) in enumerate(records):
        if _looks_like_metadata(values):
            continue
        if _looks_like_position_header(values):
            header_index = index
            break

    if header_index is None:
        for index, (_, values) in enumerate(records):
            if not _looks_like_metadata(values):
                header_index = index
                break

    if header_index is None:
        return ParsedCSV(headers=[], rows=[], account_summary=account_summary)

    header_line, headers = records[header_index]
    rows: List[Dict[str, str]] = []
    line_numbers: List[int] = []

    for line_number, values in all_records:
        if line_number <= header_line:
            continue
        if not values:
            if rows:
                break
            continue
        if _is_footer(values):
            break
        row = {header: values[position] for position, header in enumerate(headers) if position < len(values)}
        rows.append(row)
        line_numbers.append(line_number)

    logger.debug(f"Parsed CSV: {len(headers)} columns, {len(rows)} rows (header on line {records[header_index][0]})")
    return ParsedCSV(headers=headers, rows=rows, line_numbers=line_numbers,
                     account_summary=account_summary)


def infer_column_mapping(headers: List[str]) -> Optional[ColumnMapping]:
    """
    Infer a column mapping from CSV headers.

    Returns:
        ColumnMapping, or None when symbol or quantity cannot be resolved
    """
    normalized = [normalize_header(h) for h in headers]
    claimed = set()
    resolved: Dict[str, str] = {}

    for field_name, synonyms in COLUMN_SYNONYMS:
        for synonym in synonyms:
            match = next(
                (i for i, h in enumerate(normalized) if h == synonym and i not in claimed),
                None,
            )
            if match is not None:
                resolved[field_name] = headers[match]
                claimed.add(match)
                break

    for field_name, fragments in COLUMN_SUBSTRINGS:
        if field_name in resolved:
            continue
        for fragment in fragments:
            match = next(
                (i for i, h in enumerate(normalized) if fragment in h and i not in claimed),
                None,
            )
            if match is not None:
                resolved[field_name] = headers[match]
                claimed.add(match)
                break

    if not all(name in resolved for name in REQUIRED_FIELDS):
        return None
    return ColumnMapping(**resolved)


def validate_mapping(headers: List[str], mapping: ColumnMapping) -> None:
    """
    Check that every mapped column exists in the file.

    Raises:
        ValidationError: Listing the mapped columns that are missing
    """
    present = set(headers)
    missing = [column for column in mapping.to_dict().values() if column not in present]
    if missing:
        raise ValidationError(
            f"Mapped columns not found in file: {', '.join(missing)}",
            details={'missing_columns': missing, 'headers': headers},
        )


def get_suggested_mappings(headers: List[str]) -> Dict[str, Any]:
    """Inferred mapping plus the field list a UI needs for manual mapping."""
    auto = infer_column_mapping(headers)
    return {
        'auto': auto.to_dict() if auto else None,
        'manual': [dict(item) for item in MANUAL_MAPPING_FIELDS],
    }


def _cell(row: Dict[str, str], column: Optional[str]) -> Optional[str]:
    if not column:
        return None
    value = row.get(column)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class RowRejected(ValueError):
    """A row that cannot become a position. value holds the offending cell when there is one."""

    def __init__(self, reason: str, value: Any = None):
        super().__init__(reason)
        self.value = value


def parse_numeric_field(value: Any, label: str) -> Optional[Decimal]:
    """parse_numeric that reports the bad cell through RowRejected."""
    try:
        return parse_numeric(value)
    except ValueError:
        raise RowRejected(f"{label} must be a valid number", value)


def parse_position_row(row: Dict[str, str], mapping: ColumnMapping, row_number: int) -> RawPositionRow:
    """
    Turn one mapped row into a RawPositionRow.

    Raises:
        RowRejected: With a reason suitable for a RowError
    """
    if mapping.symbol not in row or mapping.quantity not in row:
        raise RowRejected("Row has too few fields", ','.join(str(v) for v in row.values()))

    symbol = _cell(row, mapping.symbol)
    if not symbol:
        raise RowRejected("Symbol is required")

    quantity = parse_numeric_field(_cell(row, mapping.quantity), "Quantity")
    if quantity is None:
        raise RowRejected("Quantity is required", symbol)

    numbers: Dict[str, Optional[Decimal]] = {}
    for field_name in NUMERIC_FIELDS:
        numbers[field_name] = parse_numeric_field(_cell(row, getattr(mapping, field_name)), field_name)

    average_price = numbers['average_price']
    cost_basis = numbers['cost_basis']
    last_price = numbers['last_price']
    market_value = numbers['market_value']

    if average_price is None and cost_basis is not None and quantity != 0:
        average_price = cost_basis / abs(quantity)
    if cost_basis is None and average_price is not None:
        cost_basis = abs(quantity) * average_price
    if market_value is None and last_price is not None:
        market_value = quantity * last_price

    return RawPositionRow(
        symbol=symbol,
        quantity=quantity,
        row_number=row_number,
        average_price=average_price,
        cost_basis=cost_basis,
        last_price=last_price,
        market_value=market_value,
        unrealized_pl=numbers['unrealized_pl'],
        account_nickname=_cell(row, mapping.account_nickname),
        asset_type=_cell(row, mapping.asset_class),
        currency=(_cell(row, mapping.currency) or None),
        raw=dict(row),
    )


def parse_position_rows(rows: List[Dict[str, str]], mapping: ColumnMapping,
                        line_numbers: Optional[List[int]] = None) -> RowParseResult:
    """
    Parse every row, collecting rejected rows as RowError records.

    Args:
        rows: Row dicts from parse_csv_content
        mapping: Column mapping to apply
        line_numbers: Source line per row; defaults to index + 2 (header on line 1)

    Returns:
        RowParseResult where len(rows) + len(errors) == total_rows
    """
    parsed: List[RawPositionRow] = []
    errors: List[RowError] = []

    for index, row in enumerate(rows):
        row_number = line_numbers[index] if line_numbers and index < len(line_numbers) else index + 2
        try:
            parsed.append(parse_position_row(row, mapping, row_number))
        except ValueError as e:
            value = getattr(e, 'value', None)
            if value is None:
                value = _cell(row, mapping.symbol) or dict(row)
            errors.append(RowError(row=row_number, value=value, reason=str(e)))

    if errors:
        logger.info(f"⚠️ Rejected {len(errors)} of {len(rows)} position rows")
    return RowParseResult(rows=parsed, errors=errors, total_rows=len(rows))
