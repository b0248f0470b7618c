"""
Tests for OFX investment statement parsing.
"""

from datetime import datetime, timezone

import pytest

from brokerbridge.utils.errors import ParseError
from brokerbridge.utils.portfolio.ofx_parser import looks_like_ofx, parse_ofx_date, parse_ofx_positions


def test_positions_are_joined_with_security_list(ofx_sample):
    parsed = parse_ofx_positions(ofx_sample)

    assert parsed.account_id == "987654321"
    assert parsed.broker_id == "vanguard.com"
    assert parsed.as_of == datetime(2024, 1, 19, 12, 0, tzinfo=timezone.utc)
    assert [row['Symbol'] for row in parsed.rows] == ["AAPL", "VFIAX"]
    assert parsed.rows[0]['Quantity'] == "100"
    assert parsed.rows[0]['Market Value'] == "18550.00"
    assert parsed.rows[0]['Security Type'] == "Equity"
    assert parsed.rows[1]['Security Type'] == "Mutual Fund"
    assert parsed.rows[1]['Description'] == "Vanguard 500 Index Admiral"


def test_short_position_is_negative(ofx_sample):
    parsed = parse_ofx_positions(ofx_sample.replace("<POSTYPE>LONG\n<UNITS>100", "<POSTYPE>SHORT\n<UNITS>100", 1))
    assert parsed.rows[0]['Quantity'] == "-100"


def test_unknown_security_falls_back_to_unique_id(ofx_sample):
    parsed = parse_ofx_positions(ofx_sample.replace("<TICKER>AAPL", ""))
    assert parsed.rows[0]['Symbol'] == "037833100"


def test_not_ofx():
    assert not looks_like_ofx("Symbol,Quantity\nAAPL,1\n")
    with pytest.raises(ParseError):
        parse_ofx_positions("Symbol,Quantity\nAAPL,1\n")


def test_missing_investment_statement():
    with pytest.raises(ParseError) as exc_info:
        parse_ofx_positions("OFXHEADER:100\n<OFX>\n<BANKMSGSRSV1></BANKMSGSRSV1>\n</OFX>")
    assert "INVSTMTRS" in exc_info.value.message


@pytest.mark.parametrize("raw,expected", [
    ("20240119", datetime(2024, 1, 19, tzinfo=timezone.utc)),
    ("20240119120000.000[-5:EST]", datetime(2024, 1, 19, 12, 0, tzinfo=timezone.utc)),
    ("", None),
    ("garbage", None),
    ("20241399", None),
])
def test_parse_ofx_date(raw, expected):
    assert parse_ofx_date(raw) == expected
