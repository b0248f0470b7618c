"""
Instrument parsing and symbol normalization.

Turns the raw symbol strings brokers put in exports and API payloads into
structured instruments. Option contracts are decomposed from the OCC
encoding (ROOT + YYMMDD + C/P + strike x 1000, 8 digits), with or without
the space padding some brokers keep, and from the E*TRADE description form
("AAPL Nov 14 '25 $585 Put").

parse_instrument never raises: input it cannot classify comes back as an
OTHER instrument with a warning attached.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from brokerbridge.utils.portfolio.constants import (
    ASSET_TYPE_KEYWORDS,
    CRYPTO_QUOTE_CURRENCIES,
    DEFAULT_CURRENCY,
    DEFAULT_OPTION_MULTIPLIER,
    EXCHANGE_SUFFIXES,
    KNOWN_ETFS,
    MONEY_MARKET_MARKER,
    UNAMBIGUOUS_CRYPTO,
)

logger = logging.getLogger(__name__)


class AssetClass(str, Enum):
    EQUITY = "EQUITY"
    ETF = "ETF"
    OPTION = "OPTION"
    FUND = "FUND"
    BOND = "BOND"
    CRYPTO = "CRYPTO"
    CASH = "CASH"
    OTHER = "OTHER"


class OptionRight(str, Enum):
    CALL = "CALL"
    PUT = "PUT"


OCC_PATTERN = re.compile(r'^([A-Z][A-Z0-9.]{0,5})\s*(\d{6})([CP])(\d{8})$')
OPTION_DESCRIPTION_PATTERN = re.compile(
    r"^([A-Z][A-Z0-9.]{0,5})\s+([A-Z]+)\s+(\d{1,2})\s+'(\d{2})\s+\$(\d+(?:\.\d+)?)\s+(CALL|PUT)$"
)
TICKER_PATTERN = re.compile(r'^[A-Z]{1,5}([./-][A-Z]{1,2})?$')
IDENTIFIER_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9./\- ]{0,19}$')
EXCHANGE_SUFFIX_PATTERN = re.compile(r'^(.+)\.([A-Z]+)$')

MONTHS = {
    'JAN': 1, 'JANUARY': 1, 'FEB': 2, 'FEBRUARY': 2, 'MAR': 3, 'MARCH': 3,
    'APR': 4, 'APRIL': 4, 'MAY': 5, 'JUN': 6, 'JUNE': 6, 'JUL': 7, 'JULY': 7,
    'AUG': 8, 'AUGUST': 8, 'SEP': 9, 'SEPT': 9, 'SEPTEMBER': 9,
    'OCT': 10, 'OCTOBER': 10, 'NOV': 11, 'NOVEMBER': 11, 'DEC': 12, 'DECEMBER': 12,
}

# raw_row keys consulted for hints (lowercased)
ASSET_TYPE_COLUMNS = ('security type', 'asset class', 'asset type', 'securitytype', 'product type')
NAME_COLUMNS = ('description', 'security description', 'security name', 'name', 'stock name')
CURRENCY_COLUMNS = ('currency',)


@dataclass(frozen=True)
class ParsedInstrument:
    """Structured instrument produced from a raw broker symbol."""
    symbol: str                             # Canonical symbol (unpadded OCC for options)
    asset_class: AssetClass
    exchange: Optional[str] = None
    name: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    underlying_symbol: Optional[str] = None
    expiration: Optional[date] = None
    strike: Optional[Decimal] = None
    right: Optional[OptionRight] = None
    multiplier: Optional[int] = None
    warnings: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def is_option(self) -> bool:
        return self.asset_class == AssetClass.OPTION

    @property
    def key(self) -> str:
        """Canonical dedupe key shared by every broker reporting this instrument."""
        return build_instrument_key(
            self.symbol, self.underlying_symbol, self.expiration, self.right, self.strike
        )


def build_instrument_key(symbol: str, underlying_symbol: Optional[str] = None,
                         expiration: Optional[date] = None,
                         right: Optional[OptionRight] = None,
                         strike: Optional[Decimal] = None) -> str:
    if underlying_symbol and expiration and right and strike is not None:
        right_value = right.value if isinstance(right, OptionRight) else str(right)
        return f"OPT:{underlying_symbol}:{expiration.isoformat()}:{right_value}:{_format_strike(strike)}"
    return symbol


def _format_strike(strike: Decimal) -> str:
    text = format(Decimal(strike).normalize(), 'f')
    return text


def build_occ_symbol(underlying: str, expiration: date, right: OptionRight,
                     strike: Decimal, padded: bool = False) -> str:
    """
    Build an OCC option symbol.

    Args:
        underlying: Underlying root symbol
        expiration: Expiration date
        right: CALL or PUT
        strike: Strike price
        padded: Pad the root to 6 characters as the OCC listing does

    Returns:
        e.g. "AAPL240119C00150000" (or "AAPL  240119C00150000" when padded)
    """
    root = underlying.upper().ljust(6) if padded else underlying.upper()
    right_value = right.value if isinstance(right, OptionRight) else str(right).upper()
    strike_int = int((Decimal(strike) * 1000).to_integral_value())
    return f"{root}{expiration.strftime('%y%m%d')}{right_value[0]}{strike_int:08d}"


def parse_occ_symbol(symbol: str) -> Optional[Dict[str, Any]]:
    """Decompose an OCC option symbol, or return None when it is not one."""
    match = OCC_PATTERN.match(symbol.strip().upper())
    if not match:
        return None

    underlying, date_str, right_char, strike_str = match.groups()
    try:
        expiration = datetime.strptime(date_str, '%y%m%d').date()
    except ValueError:
        return None

    return {
        'underlying': underlying,
        'expiration': expiration,
        'right': OptionRight.CALL if right_char == 'C' else OptionRight.PUT,
        'strike': Decimal(strike_str) / Decimal(1000),
    }


def parse_option_description(symbol: str) -> Optional[Dict[str, Any]]:
    """Decompose "AAPL Nov 14 '25 $585 Put" style option descriptions."""
    match = OPTION_DESCRIPTION_PATTERN.match(' '.join(symbol.strip().upper().split()))
    if not match:
        return None

    underlying, month_name, day, year, strike_str, right = match.groups()
    month = MONTHS.get(month_name)
    if not month:
        return None
    try:
        expiration = date(2000 + int(year), month, int(day))
    except ValueError:
        return None

    return {
        'underlying': underlying,
        'expiration': expiration,
        'right': OptionRight(right),
        'strike': Decimal(strike_str),
    }


def normalize_symbol(raw_symbol: str, broker_hint: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """
    Normalize a raw symbol.

    Returns:
        (symbol, exchange) where exchange was taken from a suffix like ".NYSE"
    """
    symbol = (raw_symbol or '').strip().upper()

    if broker_hint and broker_hint.upper() == 'ROBINHOOD':
        # Robinhood appends instrument ids after a colon
        symbol = symbol.split(':')[0].strip()

    exchange = None
    match = EXCHANGE_SUFFIX_PATTERN.match(symbol)
    if match and match.group(2) in EXCHANGE_SUFFIXES:
        symbol = match.group(1)
        if match.group(2) != 'US':
            exchange = match.group(2)

    return symbol, exchange


def classify_asset_type(value: Optional[str]) -> Optional[AssetClass]:
    """Map a broker security-type label ("Mutual Fund", "ETFs & CEFs", "OPTN") to an AssetClass."""
    if not value:
        return None
    lowered = str(value).strip().lower()
    if not lowered:
        return None
    for keyword, asset_class in ASSET_TYPE_KEYWORDS:
        if keyword in lowered:
            return AssetClass(asset_class)
    return None


def _row_value(raw_row: Optional[Dict[str, Any]], candidates: Tuple[str, ...]) -> Optional[str]:
    if not raw_row:
        return None
    lowered = {str(k).strip().lower(): v for k, v in raw_row.items() if k is not None}
    for candidate in candidates:
        value = lowered.get(candidate)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _is_crypto(symbol: str) -> bool:
    if symbol in UNAMBIGUOUS_CRYPTO:
        return True
    compact = symbol.replace('-', '').replace('/', '')
    for quote in CRYPTO_QUOTE_CURRENCIES:
        if compact.endswith(quote) and compact[:-len(quote)] in UNAMBIGUOUS_CRYPTO:
            return True
    return False


def parse_instrument(raw_symbol: str, broker_hint: Optional[str] = None,
                     raw_row: Optional[Dict[str, Any]] = None) -> ParsedInstrument:
    """
    Parse a raw broker symbol into a structured instrument.

    Args:
        raw_symbol: Symbol as it appears in the file or API payload
        broker_hint: Detected broker (e.g. "ROBINHOOD"), used for broker quirks
        raw_row: Full source row; security type, name and currency columns are used as hints

    Returns:
        ParsedInstrument (asset class OTHER with a warning when unrecognized)
    """
    name = _row_value(raw_row, NAME_COLUMNS)
    currency = (_row_value(raw_row, CURRENCY_COLUMNS) or DEFAULT_CURRENCY).upper()
    type_hint = classify_asset_type(_row_value(raw_row, ASSET_TYPE_COLUMNS))

    symbol, exchange = normalize_symbol(raw_symbol, broker_hint)
    if not symbol:
        return ParsedInstrument(
            symbol='', asset_class=AssetClass.OTHER, name=name, currency=currency,
            warnings=("Empty symbol",),
        )

    if symbol.endswith(MONEY_MARKET_MARKER):
        return ParsedInstrument(
            symbol=symbol.rstrip('*').strip(), asset_class=AssetClass.CASH,
            exchange=exchange, name=name, currency=currency,
        )

    option = parse_occ_symbol(symbol) or parse_option_description(symbol)
    if option:
        return ParsedInstrument(
            symbol=build_occ_symbol(option['underlying'], option['expiration'],
                                    option['right'], option['strike']),
            asset_class=AssetClass.OPTION,
            exchange=exchange,
            name=name,
            currency=currency,
            underlying_symbol=option['underlying'],
            expiration=option['expiration'],
            strike=option['strike'],
            right=option['right'],
            multiplier=DEFAULT_OPTION_MULTIPLIER,
        )

    if type_hint == AssetClass.OPTION:
        logger.debug(f"Option hint for undecodable symbol {symbol!r}")
        return ParsedInstrument(
            symbol=symbol, asset_class=AssetClass.OTHER, exchange=exchange,
            name=name, currency=currency,
            warnings=(f"Option contract could not be decoded from symbol '{symbol}'",),
        )

    if type_hint is not None and IDENTIFIER_PATTERN.match(symbol):
        asset_class = type_hint
        if asset_class == AssetClass.EQUITY and symbol in KNOWN_ETFS:
            asset_class = AssetClass.ETF
        return ParsedInstrument(
            symbol=symbol, asset_class=asset_class, exchange=exchange,
            name=name, currency=currency,
        )

    if _is_crypto(symbol):
        return ParsedInstrument(
            symbol=symbol, asset_class=AssetClass.CRYPTO, exchange=exchange,
            name=name, currency=currency,
        )

    if TICKER_PATTERN.match(symbol):
        asset_class = AssetClass.ETF if symbol in KNOWN_ETFS else AssetClass.EQUITY
        return ParsedInstrument(
            symbol=symbol, asset_class=asset_class, exchange=exchange,
            name=name, currency=currency,
        )

    return ParsedInstrument(
        symbol=symbol, asset_class=AssetClass.OTHER, exchange=exchange,
        name=name, currency=currency,
        warnings=(f"Unrecognized symbol format '{symbol}'",),
    )
