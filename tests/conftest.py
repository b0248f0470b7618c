"""
Pytest configuration for the BrokerBridge backend tests

Provides an encryption key, an in-memory repository, service fixtures and
sample broker files.
"""

import pytest
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Add the backend directory to Python path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from brokerbridge.utils.config import get_config, reset_config  # noqa: E402
from brokerbridge.utils.credential_vault import CredentialVault  # noqa: E402
from brokerbridge.utils.portfolio.adapter_registry import AdapterRegistry  # noqa: E402
from brokerbridge.utils.portfolio.file_import_provider import CSVImportAdapter, OFXImportAdapter  # noqa: E402
from brokerbridge.utils.portfolio.repository import InMemoryPortfolioRepository  # noqa: E402

TEST_ENCRYPTION_KEY = "test-master-key-0123456789abcdefghijklmnop"


GENERIC_CSV = """Symbol,Quantity,Average Cost,Last Price,Account
AAPL,100,10.00,20.00,Brokerage
AAPL,50,16.00,20.00,IRA
MSFT,abc,300.00,310.00,Brokerage
"""

ETRADE_CSV = """Account Summary
Account,Net Account Value,Total Gain $,Total Gain %
Individual Brokerage -1234,"$25,000.00","$1,500.00",6.38%

View Summary - All Positions
Symbol,Last Price $,Change $,Change %,Qty #,Price Paid $,Total Gain $,Value $
AAPL,150.00,1.25,0.84,10,120.00,300.00,"1,500.00"
SPY,500.00,2.00,0.40,5,450.00,250.00,"2,500.00"
AAPL Nov 14 '25 $585 Put,3.50,0.10,2.94,-2,4.00,100.00,-700.00
TOTAL,,,,,,650.00,"3,300.00"
Generated at Nov 1 2025 10:00 AM ET
"""

FIDELITY_CSV = """Account Number,Account Name,Symbol,Description,Quantity,Last Price,Current Value,Cost Basis Total,Type
Z12345678,Individual,MSFT,MICROSOFT CORP,20,$400.00,"$8,000.00","$6,000.00",Margin
Z12345678,Individual,SPAXX**,HELD IN MONEY MARKET,,,"$1,000.00",,Cash
Z87654321,Roth IRA,AAPL,APPLE INC,30,$150.00,"$4,500.00","$3,000.00",Cash

"Date downloaded Nov-01-2025 10:00 a.m ET"
"""

OFX_SAMPLE = """OFXHEADER:100
DATA:OFXSGML
VERSION:102

<OFX>
<INVSTMTMSGSRSV1>
<INVSTMTTRNRS>
<INVSTMTRS>
<DTASOF>20240119120000
<CURDEF>USD
<INVACCTFROM>
<BROKERID>vanguard.com
<ACCTID>987654321
</INVACCTFROM>
<INVPOSLIST>
<POSSTOCK>
<INVPOS>
<SECID><UNIQUEID>037833100<UNIQUEIDTYPE>CUSIP</SECID>
<HELDINACCT>CASH
<POSTYPE>LONG
<UNITS>100
<UNITPRICE>185.50
<MKTVAL>18550.00
<DTPRICEASOF>20240119
</INVPOS>
</POSSTOCK>
<POSMF>
<INVPOS>
<SECID><UNIQUEID>922908363<UNIQUEIDTYPE>CUSIP</SECID>
<HELDINACCT>CASH
<POSTYPE>LONG
<UNITS>10
<UNITPRICE>400.00
<MKTVAL>4000.00
<DTPRICEASOF>20240119
</INVPOS>
</POSMF>
</INVPOSLIST>
</INVSTMTRS>
</INVSTMTTRNRS>
</INVSTMTMSGSRSV1>
<SECLISTMSGSRSV1>
<SECLIST>
<STOCKINFO>
<SECINFO>
<SECID><UNIQUEID>037833100<UNIQUEIDTYPE>CUSIP</SECID>
<SECNAME>Apple Inc
<TICKER>AAPL
</SECINFO>
</STOCKINFO>
<MFINFO>
<SECINFO>
<SECID><UNIQUEID>922908363<UNIQUEIDTYPE>CUSIP</SECID>
<SECNAME>Vanguard 500 Index Admiral
<TICKER>VFIAX
</SECINFO>
</MFINFO>
</SECLIST>
</SECLISTMSGSRSV1>
</OFX>
"""


@pytest.fixture(autouse=True)
def encryption_env(monkeypatch):
    """Deterministic environment for every test."""
    monkeypatch.setenv("BROKER_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.delenv("ETRADE_CONSUMER_KEY", raising=False)
    monkeypatch.delenv("ETRADE_CONSUMER_SECRET", raising=False)
    monkeypatch.delenv("BACKEND_API_KEY", raising=False)
    monkeypatch.setenv("BROKERBRIDGE_REPOSITORY", "memory")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def vault():
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def repository():
    return InMemoryPortfolioRepository()


@pytest.fixture
def registry(vault):
    registry = AdapterRegistry()
    registry.register(CSVImportAdapter(vault))
    registry.register(OFXImportAdapter(vault))
    return registry


@pytest.fixture
def sync_service(repository, registry):
    from brokerbridge.services.connection_sync_service import ConnectionSyncService
    return ConnectionSyncService(repository, registry, get_config())


@pytest.fixture
def positions_service(repository):
    from brokerbridge.services.aggregated_positions_service import AggregatedPositionsService
    return AggregatedPositionsService(repository)


@pytest.fixture
def generic_csv():
    return GENERIC_CSV


@pytest.fixture
def etrade_csv():
    return ETRADE_CSV


@pytest.fixture
def fidelity_csv():
    return FIDELITY_CSV


@pytest.fixture
def ofx_sample():
    return OFX_SAMPLE
