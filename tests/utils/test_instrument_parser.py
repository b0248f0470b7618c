"""
Tests for instrument parsing: OCC options, E*TRADE option descriptions,
broker symbol quirks and asset class classification.
"""

import subprocess
import sys
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

from brokerbridge.utils.instrument_parser import (
    AssetClass,
    OptionRight,
    build_instrument_key,
    build_occ_symbol,
    classify_asset_type,
    normalize_symbol,
    parse_instrument,
    parse_occ_symbol,
    parse_option_description,
)


class TestImport(unittest.TestCase):

    def test_imports_in_a_fresh_interpreter(self):
        # Each module must load as the first import of a process
        for module in ('brokerbridge.utils.instrument_parser', 'brokerbridge.utils.portfolio.models'):
            with self.subTest(module=module):
                completed = subprocess.run(
                    [sys.executable, '-c', f'import {module}'],
                    cwd=Path(__file__).resolve().parents[2],
                    capture_output=True,
                    text=True,
                )
                self.assertEqual(completed.returncode, 0, completed.stderr)


class TestOptionParsing(unittest.TestCase):

    def test_occ_symbol(self):
        parsed = parse_instrument("AAPL240119C00150000")
        self.assertEqual(parsed.asset_class, AssetClass.OPTION)
        self.assertEqual(parsed.underlying_symbol, "AAPL")
        self.assertEqual(parsed.expiration, date(2024, 1, 19))
        self.assertEqual(parsed.strike, Decimal("150.00"))
        self.assertEqual(parsed.right, OptionRight.CALL)
        self.assertEqual(parsed.multiplier, 100)
        self.assertEqual(parsed.symbol, "AAPL240119C00150000")

    def test_padded_occ_symbol_normalizes_to_unpadded(self):
        parsed = parse_instrument("SPY   240621P00432500")
        self.assertEqual(parsed.symbol, "SPY240621P00432500")
        self.assertEqual(parsed.strike, Decimal("432.5"))
        self.assertEqual(parsed.right, OptionRight.PUT)

    def test_etrade_description(self):
        parsed = parse_instrument("AAPL Nov 14 '25 $585 Put")
        self.assertEqual(parsed.asset_class, AssetClass.OPTION)
        self.assertEqual(parsed.underlying_symbol, "AAPL")
        self.assertEqual(parsed.expiration, date(2025, 11, 14))
        self.assertEqual(parsed.strike, Decimal("585"))
        self.assertEqual(parsed.right, OptionRight.PUT)
        self.assertEqual(parsed.symbol, "AAPL251114P00585000")

    def test_same_contract_from_two_formats_shares_key(self):
        from_occ = parse_instrument("AAPL  251114P00585000")
        from_description = parse_instrument("AAPL Nov 14 '25 $585 Put")
        self.assertEqual(from_occ.key, from_description.key)
        self.assertEqual(from_occ.key, "OPT:AAPL:2025-11-14:PUT:585")

    def test_invalid_occ_date_is_not_an_option(self):
        self.assertIsNone(parse_occ_symbol("AAPL241319C00150000"))

    def test_description_with_unknown_month(self):
        self.assertIsNone(parse_option_description("AAPL Foo 14 '25 $585 Put"))

    def test_build_occ_symbol_padded(self):
        symbol = build_occ_symbol("AAPL", date(2024, 1, 19), OptionRight.CALL, Decimal("150"), padded=True)
        self.assertEqual(symbol, "AAPL  240119C00150000")

    def test_option_hint_without_decodable_symbol(self):
        parsed = parse_instrument("WEIRD-OPT", raw_row={'Security Type': 'Option'})
        self.assertEqual(parsed.asset_class, AssetClass.OTHER)
        self.assertTrue(parsed.warnings)


class TestSymbolClassification(unittest.TestCase):

    def test_asset_classes(self):
        cases = [
            ("AAPL", None, AssetClass.EQUITY),
            ("spy", None, AssetClass.ETF),
            ("BRK.B", None, AssetClass.EQUITY),
            ("BTC", None, AssetClass.CRYPTO),
            ("ETH-USD", None, AssetClass.CRYPTO),
            ("SPAXX**", None, AssetClass.CASH),
            ("VFIAX", {'Security Type': 'Mutual Fund'}, AssetClass.FUND),
            ("912828ZT0", {'Asset Class': 'Treasury Bond'}, AssetClass.BOND),
            ("VTI", {'Security Type': 'Equity'}, AssetClass.ETF),
        ]
        for raw_symbol, row, expected in cases:
            with self.subTest(symbol=raw_symbol):
                self.assertEqual(parse_instrument(raw_symbol, raw_row=row).asset_class, expected)

    def test_money_market_symbol_strips_marker(self):
        self.assertEqual(parse_instrument("SPAXX**").symbol, "SPAXX")

    def test_unrecognized_symbol_never_raises(self):
        for raw_symbol in ["", "   ", "%%%", "THIS IS NOT A SYMBOL AT ALL 12345"]:
            with self.subTest(symbol=raw_symbol):
                parsed = parse_instrument(raw_symbol)
                self.assertEqual(parsed.asset_class, AssetClass.OTHER)
                self.assertTrue(parsed.warnings)

    def test_name_and_currency_hints(self):
        parsed = parse_instrument("SHOP", raw_row={'Description': 'Shopify Inc', 'Currency': 'cad'})
        self.assertEqual(parsed.name, "Shopify Inc")
        self.assertEqual(parsed.currency, "CAD")

    def test_fidelity_type_column_is_not_an_asset_hint(self):
        parsed = parse_instrument("MSFT", broker_hint="FIDELITY", raw_row={'Type': 'Cash'})
        self.assertEqual(parsed.asset_class, AssetClass.EQUITY)

    def test_classify_asset_type(self):
        self.assertEqual(classify_asset_type("ETFs & CEFs"), AssetClass.ETF)
        self.assertEqual(classify_asset_type("OPTN"), AssetClass.OPTION)
        self.assertEqual(classify_asset_type("Money Market"), AssetClass.CASH)
        self.assertIsNone(classify_asset_type(""))
        self.assertIsNone(classify_asset_type("Something else"))


class TestNormalizeSymbol(unittest.TestCase):

    def test_exchange_suffix(self):
        self.assertEqual(normalize_symbol("aapl.nasdaq"), ("AAPL", "NASDAQ"))
        self.assertEqual(normalize_symbol("MSFT.US"), ("MSFT", None))

    def test_share_class_suffix_is_kept(self):
        self.assertEqual(normalize_symbol("BRK.B"), ("BRK.B", None))

    def test_robinhood_instrument_suffix(self):
        self.assertEqual(normalize_symbol("TSLA:12345", broker_hint="ROBINHOOD"), ("TSLA", None))

    def test_exchange_does_not_split_instruments(self):
        self.assertEqual(parse_instrument("AAPL.NASDAQ").key, parse_instrument("AAPL").key)

    def test_instrument_key(self):
        self.assertEqual(build_instrument_key("AAPL"), "AAPL")
        self.assertEqual(
            build_instrument_key("X", "AAPL", date(2024, 1, 19), OptionRight.CALL, Decimal("150.000")),
            "OPT:AAPL:2024-01-19:CALL:150",
        )


if __name__ == '__main__':
    unittest.main()
