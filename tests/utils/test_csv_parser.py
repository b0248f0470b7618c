"""
Tests for broker CSV ingestion: table discovery, column inference,
numeric parsing and per-row error collection.
"""

from decimal import Decimal

import pytest

from brokerbridge.utils.errors import ParseError, ValidationError
from brokerbridge.utils.portfolio.csv_parser import (
    ColumnMapping,
    get_suggested_mappings,
    infer_column_mapping,
    normalize_header,
    parse_csv_content,
    parse_numeric,
    parse_position_rows,
    validate_mapping,
)


class TestParseNumeric:

    @pytest.mark.parametrize("raw,expected", [
        ("1,234.50", Decimal("1234.50")),
        ("$1,234.50", Decimal("1234.50")),
        ("(1,234.50)", Decimal("-1234.50")),
        ("($12.00)", Decimal("-12.00")),
        ("-5", Decimal("-5")),
        ("+7.25", Decimal("7.25")),
        (42, Decimal("42")),
    ])
    def test_valid_numbers(self, raw, expected):
        assert parse_numeric(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "--", "N/A", "  "])
    def test_empty_values(self, raw):
        assert parse_numeric(raw) is None

    @pytest.mark.parametrize("raw", ["abc", "12abc", "NaN", "Infinity"])
    def test_invalid_values(self, raw):
        with pytest.raises(ValueError):
            parse_numeric(raw)


class TestParseCsvContent:

    def test_etrade_export_with_summary_and_footer(self, etrade_csv):
        parsed = parse_csv_content(etrade_csv)

        assert parsed.headers[0] == "Symbol"
        assert [row["Symbol"] for row in parsed.rows] == ["AAPL", "SPY", "AAPL Nov 14 '25 $585 Put"]
        assert parsed.line_numbers == [7, 8, 9]
        assert parsed.account_summary.account_name == "Individual Brokerage -1234"
        assert parsed.account_summary.net_account_value == Decimal("25000.00")
        assert parsed.account_summary.total_gain_percent == Decimal("6.38")

    def test_fidelity_export_skips_disclaimer(self, fidelity_csv):
        parsed = parse_csv_content(fidelity_csv)
        assert len(parsed.rows) == 3
        assert parsed.account_summary is None

    def test_byte_order_mark_is_stripped(self):
        parsed = parse_csv_content("\ufeffSymbol,Quantity\nAAPL,1\n")
        assert parsed.headers == ["Symbol", "Quantity"]

    def test_empty_content(self):
        parsed = parse_csv_content("")
        assert parsed.headers == []
        assert parsed.rows == []

    def test_short_rows_are_kept_for_rejection(self):
        parsed = parse_csv_content("Symbol,Quantity,Price,Value\nAAPL,1,2,2\nlonely\n")
        assert len(parsed.rows) == 2
        assert parsed.rows[1] == {"Symbol": "lonely"}
        assert parsed.line_numbers == [2, 3]

    def test_blank_line_ends_the_table(self):
        parsed = parse_csv_content("Symbol,Quantity\nAAPL,1\n,,\nSome disclaimer text\n")
        assert [row["Symbol"] for row in parsed.rows] == ["AAPL"]

    def test_blank_lines_before_first_row_are_ignored(self):
        parsed = parse_csv_content("Symbol,Quantity\n\nAAPL,1\n")
        assert parsed.line_numbers == [3]

    def test_malformed_csv_raises_parse_error(self):
        with pytest.raises(ParseError):
            parse_csv_content('Symbol,Quantity\n' + 'A' * 200000 + ',1\n')


class TestColumnInference:

    def test_etrade_headers(self, etrade_csv):
        mapping = infer_column_mapping(parse_csv_content(etrade_csv).headers)
        assert mapping.symbol == "Symbol"
        assert mapping.quantity == "Qty #"
        assert mapping.average_price == "Price Paid $"
        assert mapping.last_price == "Last Price $"
        assert mapping.market_value == "Value $"
        assert mapping.unrealized_pl == "Total Gain $"

    def test_fidelity_headers(self, fidelity_csv):
        mapping = infer_column_mapping(parse_csv_content(fidelity_csv).headers)
        assert mapping.cost_basis == "Cost Basis Total"
        assert mapping.market_value == "Current Value"
        assert mapping.account_nickname == "Account Name"
        assert mapping.asset_class is None

    def test_substring_fallback(self):
        mapping = infer_column_mapping(["Ticker Symbol", "Number of Shares", "Market Value (USD)"])
        assert mapping.symbol == "Ticker Symbol"
        assert mapping.quantity == "Number of Shares"
        assert mapping.market_value == "Market Value (USD)"

    def test_no_header_claimed_twice(self):
        mapping = infer_column_mapping(["Symbol", "Quantity", "Price"])
        assert mapping.last_price == "Price"
        assert mapping.average_price is None

    @pytest.mark.parametrize("headers", [
        ["Symbol", "Description", "Price"],
        ["Name", "Quantity"],
        [],
    ])
    def test_never_returns_mapping_without_symbol_and_quantity(self, headers):
        assert infer_column_mapping(headers) is None

    def test_suggested_mappings(self):
        suggestions = get_suggested_mappings(["Description", "Amount"])
        assert suggestions["auto"] is None
        assert {item["field"] for item in suggestions["manual"]} >= {"symbol", "quantity"}

    def test_normalize_header(self):
        assert normalize_header("  Qty # ") == "qty"
        assert normalize_header("Cost_Basis-Total") == "cost basis total"
        assert normalize_header("Share(s)") == "share"


class TestColumnMapping:

    def test_from_dict_accepts_camel_case(self):
        mapping = ColumnMapping.from_dict({'symbol': 'Ticker', 'quantity': 'Shares', 'averagePrice': 'Avg'})
        assert mapping.average_price == 'Avg'
        assert mapping.to_dict() == {'symbol': 'Ticker', 'quantity': 'Shares', 'average_price': 'Avg'}

    def test_from_dict_requires_symbol_and_quantity(self):
        with pytest.raises(ValidationError) as exc_info:
            ColumnMapping.from_dict({'symbol': 'Ticker'})
        assert exc_info.value.details['missing_fields'] == ['quantity']

    def test_validate_mapping_reports_missing_columns(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_mapping(["Ticker", "Shares"], ColumnMapping(symbol="Ticker", quantity="Qty"))
        assert exc_info.value.details['missing_columns'] == ["Qty"]


class TestParsePositionRows:

    def test_good_and_bad_rows_add_up(self, generic_csv):
        parsed = parse_csv_content(generic_csv)
        mapping = infer_column_mapping(parsed.headers)
        result = parse_position_rows(parsed.rows, mapping, parsed.line_numbers)

        assert len(result.rows) == 2
        assert len(result.errors) == 1
        assert len(result.rows) + len(result.errors) == result.total_rows
        assert result.errors[0].row == 4
        assert result.errors[0].value == "abc"
        assert "Quantity" in result.errors[0].reason

    def test_derived_fields(self, generic_csv):
        parsed = parse_csv_content(generic_csv)
        result = parse_position_rows(parsed.rows, infer_column_mapping(parsed.headers), parsed.line_numbers)
        first = result.rows[0]

        assert first.cost_basis == Decimal("1000.00")
        assert first.market_value == Decimal("2000.00")
        assert first.account_nickname == "Brokerage"

    def test_average_price_derived_from_cost_basis(self, fidelity_csv):
        parsed = parse_csv_content(fidelity_csv)
        result = parse_position_rows(parsed.rows, infer_column_mapping(parsed.headers), parsed.line_numbers)
        msft = next(row for row in result.rows if row.symbol == "MSFT")
        assert msft.average_price == Decimal("300")

    def test_missing_quantity_is_a_row_error(self, fidelity_csv):
        parsed = parse_csv_content(fidelity_csv)
        result = parse_position_rows(parsed.rows, infer_column_mapping(parsed.headers), parsed.line_numbers)
        assert [error.value for error in result.errors] == ["SPAXX**"]

    def test_malformed_rows_become_errors(self):
        parsed = parse_csv_content("Symbol,Quantity,Last Price\nAAPL,10,5\nMSFT,,\nGOOG\n")
        result = parse_position_rows(parsed.rows, infer_column_mapping(parsed.headers), parsed.line_numbers)

        assert (len(result.rows), len(result.errors), result.total_rows) == (1, 2, 3)
        assert [(error.row, error.value) for error in result.errors] == [(3, "MSFT"), (4, "GOOG")]
        assert result.errors[0].reason == "Quantity is required"
        assert result.errors[1].reason == "Row has too few fields"

    @pytest.mark.parametrize("content,value,reason", [
        ("Symbol,Quantity,Last Price\nAAPL,abc,5\n", "abc", "Quantity must be a valid number"),
        ("Symbol,Quantity,Last Price\nAAPL,10,five\n", "five", "last_price must be a valid number"),
    ])
    def test_error_reports_offending_cell(self, content, value, reason):
        parsed = parse_csv_content(content)
        result = parse_position_rows(parsed.rows, infer_column_mapping(parsed.headers), parsed.line_numbers)
        assert result.errors[0].value == value
        assert result.errors[0].reason == reason

    def test_default_row_numbers(self):
        mapping = ColumnMapping(symbol="Symbol", quantity="Quantity")
        result = parse_position_rows([{"Symbol": "", "Quantity": "1"}], mapping)
        assert result.errors[0].row == 2
