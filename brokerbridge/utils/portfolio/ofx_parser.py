"""
OFX investment statement parsing.

Reads the INVPOSLIST section of an OFX (SGML 1.x or XML 2.x) download and
joins each position with its SECLIST entry to recover the ticker. Output rows
use fixed column names so they flow through the same row parser as CSV files.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from brokerbridge.utils.errors import ParseError
from brokerbridge.utils.portfolio.csv_parser import ColumnMapping, parse_numeric

logger = logging.getLogger(__name__)

POSITION_TAGS = {
    'POSSTOCK': 'Equity',
    'POSOPT': 'Option',
    'POSMF': 'Mutual Fund',
    'POSDEBT': 'Bond',
    'POSOTHER': 'Other',
}

SECINFO_TAGS = ('STOCKINFO', 'OPTINFO', 'MFINFO', 'DEBTINFO', 'OTHERINFO')

OFX_COLUMN_MAPPING = ColumnMapping(
    symbol='Symbol',
    quantity='Quantity',
    last_price='Last Price',
    market_value='Market Value',
    asset_class='Security Type',
    currency='Currency',
)


@dataclass
class ParsedOFX:
    account_id: Optional[str]
    broker_id: Optional[str]
    as_of: Optional[datetime]
    rows: List[Dict[str, str]] = field(default_factory=list)
    currency: str = 'USD'
    available_cash: Optional[Decimal] = None     # INVBAL/AVAILCASH

    @property
    def headers(self) -> List[str]:
        return ['Account', 'Symbol', 'Description', 'Quantity', 'Last Price',
                'Market Value', 'Security Type', 'Currency']


def looks_like_ofx(content: str) -> bool:
    head = (content or '')[:2048].upper()
    return 'OFXHEADER' in head or '<OFX>' in head


def _blocks(content: str, tag: str) -> List[str]:
    return re.findall(rf'<{tag}>(.*?)</{tag}>', content, re.S | re.I)


def _value(block: str, tag: str) -> Optional[str]:
    match = re.search(rf'<{tag}>([^<\r\n]*)', block, re.I)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def parse_ofx_date(value: Optional[str]) -> Optional[datetime]:
    """Parse OFX dates such as 20240119, 20240119120000 or 20240119120000.000[-5:EST]."""
    if not value:
        return None
    digits = re.match(r'(\d{8})(\d{6})?', value)
    if not digits:
        return None
    stamp = digits.group(1) + (digits.group(2) or '000000')
    try:
        return datetime.strptime(stamp, '%Y%m%d%H%M%S').replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _available_cash(statement: str) -> Optional[Decimal]:
    for balance in _blocks(statement, 'INVBAL'):
        try:
            return parse_numeric(_value(balance, 'AVAILCASH'))
        except ValueError:
            logger.warning("⚠️ Ignoring malformed OFX AVAILCASH value")
            return None
    return None


def _security_index(content: str) -> Dict[str, Dict[str, Optional[str]]]:
    securities = {}
    for seclist in _blocks(content, 'SECLIST'):
        for tag in SECINFO_TAGS:
            for info in _blocks(seclist, tag):
                unique_id = _value(info, 'UNIQUEID')
                if unique_id:
                    securities[unique_id] = {
                        'ticker': _value(info, 'TICKER'),
                        'name': _value(info, 'SECNAME'),
                    }
    return securities


def parse_ofx_positions(content: str) -> ParsedOFX:
    """
    Parse OFX investment positions.

    Raises:
        ParseError: If the content has no investment statement
    """
    if not looks_like_ofx(content):
        raise ParseError("Content is not an OFX document")

    statements = _blocks(content, 'INVSTMTRS')
    if not statements:
        raise ParseError("OFX document has no investment statement (INVSTMTRS)")

    securities = _security_index(content)
    statement = statements[0]
    account_id = _value(statement, 'ACCTID')
    currency = _value(statement, 'CURDEF') or 'USD'
    result = ParsedOFX(
        account_id=account_id,
        broker_id=_value(statement, 'BROKERID'),
        as_of=parse_ofx_date(_value(statement, 'DTASOF')),
        currency=currency,
        available_cash=_available_cash(statement),
    )

    for poslist in _blocks(statement, 'INVPOSLIST'):
        for tag, security_type in POSITION_TAGS.items():
            for block in _blocks(poslist, tag):
                unique_id = _value(block, 'UNIQUEID') or ''
                security = securities.get(unique_id, {})
                units = _value(block, 'UNITS') or ''
                if (_value(block, 'POSTYPE') or '').upper() == 'SHORT' and units and not units.startswith('-'):
                    units = f"-{units}"

                result.rows.append({
                    'Account': account_id or '',
                    'Symbol': security.get('ticker') or unique_id,
                    'Description': security.get('name') or '',
                    'Quantity': units,
                    'Last Price': _value(block, 'UNITPRICE') or '',
                    'Market Value': _value(block, 'MKTVAL') or '',
                    'Security Type': security_type,
                    'Currency': currency,
                })

    logger.info(f"📄 Parsed OFX statement for account {account_id}: {len(result.rows)} positions")
    return result
