"""
Shared constants for instrument classification and file ingestion.

Centralized so the instrument parser, the CSV ingestion path and the
aggregation engine agree on symbol handling.
"""

# Well-known exchange-traded funds. Anything listed here is classified as an
# ETF even when the source file carries no security type column.
KNOWN_ETFS = frozenset({
    'SPY', 'QQQ', 'IWM', 'DIA', 'VOO', 'VTI', 'AGG', 'GLD', 'SLV',
    'TLT', 'HYG', 'LQD', 'XLF', 'XLE', 'XLK', 'XLV', 'XLI',
    'IVV', 'VEA', 'VWO', 'BND', 'SCHD', 'VYM', 'IEF', 'SHY', 'VGT',
})

# UNAMBIGUOUS_CRYPTO: Cryptocurrency symbols that are never valid US stock tickers.
#
# IMPORTANT: Do NOT add symbols that also exist as US stock/ETF tickers
# (SOL is ReneSola, SAND is Sandstorm Gold, COMP is Compass).
UNAMBIGUOUS_CRYPTO = frozenset({
    'BTC', 'ETH', 'ADA', 'DOGE', 'XRP', 'LTC', 'DOT', 'MATIC',
    'AVAX', 'ATOM', 'XLM', 'ALGO', 'UNI', 'AAVE', 'SHIB', 'LINK',
    # Stablecoins
    'USDC', 'USDT', 'DAI',
})

# Quote currencies accepted on crypto pairs such as BTCUSD or ETH-USDT
CRYPTO_QUOTE_CURRENCIES = ('USDT', 'USDC', 'USD')

# Exchange suffixes stripped from symbols (AAPL.NASDAQ -> AAPL on NASDAQ)
EXCHANGE_SUFFIXES = frozenset({'US', 'NYSE', 'NASDAQ', 'AMEX', 'ARCA', 'BATS'})

# Fidelity marks core money market positions with a trailing "**"
MONEY_MARKET_MARKER = '**'

DEFAULT_CURRENCY = 'USD'
DEFAULT_OPTION_MULTIPLIER = 100

# Keywords found in broker "Security Type" / "Asset Class" columns, checked in order
ASSET_TYPE_KEYWORDS = (
    ('option', 'OPTION'),
    ('optn', 'OPTION'),
    ('etf', 'ETF'),
    ('exchange traded', 'ETF'),
    ('mutual fund', 'FUND'),
    ('fund', 'FUND'),
    ('bond', 'BOND'),
    ('fixed income', 'BOND'),
    ('treasur', 'BOND'),
    ('crypto', 'CRYPTO'),
    ('money market', 'CASH'),
    ('cash', 'CASH'),
    ('equity', 'EQUITY'),
    ('stock', 'EQUITY'),
    ('common', 'EQUITY'),
)

# Lines that end the position table in broker exports
FOOTER_PREFIXES = ('total', 'margin debit', 'generated at', 'account total')

# Values that mean "no value" in numeric columns
EMPTY_NUMERIC_VALUES = frozenset({'', '--', '-', 'n/a', 'na', 'null', 'none'})
