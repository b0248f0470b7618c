"""
Tests for the E*TRADE adapter with the OAuth client mocked out.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from brokerbridge.utils.errors import IntegrityError, ProviderError, UnsupportedBrokerError, ValidationError
from brokerbridge.utils.portfolio.abstract_provider import BrokerAccount, ConnectionHandle
from brokerbridge.utils.portfolio.adapter_registry import AdapterRegistry, create_default_registry
from brokerbridge.utils.portfolio.csv_parser import RowRejected
from brokerbridge.utils.portfolio.etrade_oauth import OAuthTokens
from brokerbridge.utils.portfolio.etrade_provider import ETradeAdapter, map_position
from brokerbridge.utils.portfolio.models import BrokerKind

ACCOUNT_LIST = {
    'AccountListResponse': {
        'Accounts': {
            'Account': [
                {'accountId': '84010429', 'accountIdKey': 'key-1', 'accountDesc': 'Brokerage',
                 'accountType': 'INDIVIDUAL', 'accountStatus': 'ACTIVE'},
                {'accountId': '84010430', 'accountIdKey': 'key-2', 'accountDesc': 'Old',
                 'accountType': 'INDIVIDUAL', 'accountStatus': 'CLOSED'},
                {'accountId': '84010431', 'accountDesc': 'No key', 'accountStatus': 'ACTIVE'},
            ]
        }
    }
}

EQUITY_POSITION = {
    'symbolDescription': 'AAPL',
    'quantity': 10,
    'positionType': 'LONG',
    'pricePaid': 120.0,
    'totalCost': 1200.0,
    'marketValue': 1500.0,
    'totalGain': 300.0,
    'Quick': {'lastTrade': 150.0},
    'Product': {'symbol': 'AAPL', 'securityType': 'EQ'},
}

OPTION_POSITION = {
    'symbolDescription': "AAPL Nov 14 '25 $585 Put",
    'quantity': 2,
    'positionType': 'SHORT',
    'pricePaid': 4.0,
    'marketValue': -700.0,
    'Quick': {'lastTrade': 3.5},
    'Product': {'symbol': 'AAPL', 'securityType': 'OPTN', 'callPut': 'PUT',
                'expiryYear': 2025, 'expiryMonth': 11, 'expiryDay': 14, 'strikePrice': 585},
}


def portfolio_page(positions, next_page=None):
    portfolio = {'accountId': '84010429', 'Position': positions}
    if next_page:
        portfolio['nextPageNo'] = next_page
    return {'PortfolioResponse': {'AccountPortfolio': [portfolio]}}


@pytest.fixture
def client():
    client = MagicMock()
    client.sandbox = True
    client.request_json = AsyncMock()
    client.get_request_token = AsyncMock(return_value=OAuthTokens('req', 'req-secret'))
    client.get_access_token = AsyncMock(return_value=OAuthTokens('acc', 'acc-secret'))
    client.get_authorization_url = MagicMock(return_value='https://us.etrade.com/e/t/etws/authorize?key=k&token=req')
    return client


@pytest.fixture
def adapter(vault, client):
    return ETradeAdapter(vault, client)


@pytest.fixture
def handle(vault):
    stored = {"access_token": "acc", "access_token_secret": "acc-secret"}
    return ConnectionHandle(broker=BrokerKind.ETRADE, encrypted_auth=vault.encrypt(stored), auth=stored)


class TestAuthorization:

    @pytest.mark.asyncio
    async def test_begin_authorization_seals_request_token(self, adapter, vault):
        result = await adapter.begin_authorization('https://app.example.com/callback')

        assert result['request_token'] == 'req'
        assert 'authorization_url' in result
        assert vault.decrypt(result['oauth_state']) == {'request_token': 'req', 'request_token_secret': 'req-secret'}

    @pytest.mark.asyncio
    async def test_authenticate_with_oauth_state(self, adapter, client, vault):
        state = (await adapter.begin_authorization())['oauth_state']
        handle = await adapter.authenticate({'oauth_verifier': ' V ', 'oauth_state': state})

        client.get_access_token.assert_awaited_once_with('req', 'req-secret', 'V')
        stored = vault.decrypt(handle.encrypted_auth)
        assert stored['access_token'] == 'acc'
        assert stored['access_token_secret'] == 'acc-secret'
        assert 'acc-secret' not in handle.encrypted_auth

    @pytest.mark.asyncio
    async def test_verifier_required(self, adapter):
        with pytest.raises(ValidationError):
            await adapter.authenticate({'request_token': 'req', 'request_token_secret': 'x'})

    @pytest.mark.asyncio
    async def test_request_token_required(self, adapter):
        with pytest.raises(ValidationError):
            await adapter.authenticate({'verifier': 'V'})

    @pytest.mark.asyncio
    async def test_resume(self, adapter, vault):
        handle = await adapter.resume(vault.encrypt({'access_token': 'a', 'access_token_secret': 'b'}))
        assert handle.auth['access_token'] == 'a'

    @pytest.mark.asyncio
    async def test_resume_incomplete_credentials(self, adapter, vault):
        with pytest.raises(IntegrityError):
            await adapter.resume(vault.encrypt({'access_token': 'a'}))


class TestAccountsAndPositions:

    @pytest.mark.asyncio
    async def test_list_accounts_skips_closed_and_keyless(self, adapter, client, handle):
        client.request_json.return_value = ACCOUNT_LIST
        accounts = await adapter.list_accounts(handle)

        assert [a.external_id for a in accounts] == ['key-1']
        assert accounts[0].nickname == 'Brokerage'
        assert accounts[0].masked_number == '****0429'
        client.request_json.assert_awaited_once_with('GET', '/v1/accounts/list.json', 'acc', 'acc-secret')

    @pytest.mark.asyncio
    async def test_single_account_object(self, adapter, client, handle):
        single = ACCOUNT_LIST['AccountListResponse']['Accounts']['Account'][0]
        client.request_json.return_value = {'AccountListResponse': {'Accounts': {'Account': single}}}
        assert len(await adapter.list_accounts(handle)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_account_payload(self, adapter, client, handle):
        client.request_json.return_value = {'Unexpected': True}
        with pytest.raises(ProviderError):
            await adapter.list_accounts(handle)

    @pytest.mark.asyncio
    async def test_fetch_positions_follows_pages(self, adapter, client, handle):
        client.request_json.side_effect = [
            portfolio_page([EQUITY_POSITION], next_page=2),
            portfolio_page([OPTION_POSITION, {'quantity': 1, 'Product': {}}]),
        ]
        payload = await adapter.fetch_positions(handle, BrokerAccount(external_id='key-1'))

        endpoints = [call.args[1] for call in client.request_json.await_args_list]
        assert endpoints == ['/v1/accounts/key-1/portfolio.json', '/v1/accounts/key-1/portfolio.json?pageNumber=2']
        assert [row.symbol for row in payload.rows] == ['AAPL', 'AAPL251114P00585000']
        assert payload.total_rows == 3
        assert len(payload.row_errors) == 1
        assert payload.row_errors[0].row == 3

    @pytest.mark.asyncio
    async def test_empty_portfolio(self, adapter, client, handle):
        client.request_json.return_value = {}
        payload = await adapter.fetch_positions(handle, BrokerAccount(external_id='key-1'))
        assert payload.rows == []
        assert payload.total_rows == 0


class TestCashBalance:

    @pytest.mark.asyncio
    async def test_cash_and_money_market(self, adapter, client, handle):
        client.request_json.return_value = {'BalanceResponse': {
            'accountId': '84010429',
            'Computed': {'cashBalance': 1200.5, 'netCash': 900.0},
            'Cash': {'moneyMktBalance': 300},
        }}

        cash = await adapter.fetch_cash(handle, BrokerAccount(external_id='key-1'))

        client.request_json.assert_awaited_once_with(
            'GET', '/v1/accounts/key-1/balance.json?instType=BROKERAGE&realTimeNAV=true', 'acc', 'acc-secret'
        )
        assert cash.total == Decimal('1500.5')
        assert cash.breakdown == {'CASH': Decimal('1200.5'), 'MONEY_MARKET': Decimal('300')}

    @pytest.mark.asyncio
    async def test_net_cash_fallback(self, adapter, client, handle):
        client.request_json.return_value = {'BalanceResponse': {'Computed': {'netCash': '450.25'}}}
        cash = await adapter.fetch_cash(handle, BrokerAccount(external_id='key-1'))
        assert cash.total == Decimal('450.25')
        assert cash.breakdown == {'CASH': Decimal('450.25')}

    @pytest.mark.asyncio
    async def test_missing_balance_is_zero(self, adapter, client, handle):
        client.request_json.return_value = {}
        cash = await adapter.fetch_cash(handle, BrokerAccount(external_id='key-1'))
        assert cash.total == Decimal('0')
        assert cash.breakdown == {}

    @pytest.mark.asyncio
    async def test_malformed_balance(self, adapter, client, handle):
        client.request_json.return_value = {'BalanceResponse': {'Computed': {'cashBalance': 'lots'}}}
        with pytest.raises(ProviderError) as exc_info:
            await adapter.fetch_cash(handle, BrokerAccount(external_id='key-1'))
        assert 'cashBalance' in exc_info.value.message


class TestMapPosition:

    def test_equity(self):
        row = map_position(EQUITY_POSITION, 1)
        assert row.symbol == 'AAPL'
        assert row.quantity == Decimal('10')
        assert row.average_price == Decimal('120.0')
        assert row.cost_basis == Decimal('1200.0')
        assert row.last_price == Decimal('150.0')
        assert row.unrealized_pl == Decimal('300.0')
        assert row.asset_type == 'Equity'

    def test_short_option(self):
        row = map_position(OPTION_POSITION, 2)
        assert row.symbol == 'AAPL251114P00585000'
        assert row.quantity == Decimal('-2')
        assert row.cost_basis == Decimal('8.0')
        assert row.asset_type == 'Option'

    def test_option_without_contract_fields_uses_description(self):
        position = dict(OPTION_POSITION, Product={'symbol': 'AAPL', 'securityType': 'OPTN'})
        assert map_position(position, 1).symbol == "AAPL Nov 14 '25 $585 Put"

    def test_market_value_derived_from_last_trade(self):
        position = dict(EQUITY_POSITION)
        del position['marketValue']
        assert map_position(position, 1).market_value == Decimal('1500.0')

    @pytest.mark.parametrize("position", [
        {'quantity': 1, 'Product': {}},
        {'Product': {'symbol': 'AAPL'}},
        {'quantity': 'lots', 'Product': {'symbol': 'AAPL'}},
    ])
    def test_invalid_positions(self, position):
        with pytest.raises(ValueError):
            map_position(position, 1)

    def test_rejection_carries_bad_value(self):
        with pytest.raises(RowRejected) as exc_info:
            map_position(dict(EQUITY_POSITION, pricePaid='n/a?'), 1)
        assert exc_info.value.value == 'n/a?'
        assert str(exc_info.value) == "pricePaid must be a valid number"


class TestAdapterRegistry:

    def test_lookup(self, vault, adapter):
        registry = AdapterRegistry()
        registry.register(adapter)

        assert registry.get('ETRADE') is adapter
        assert registry.has(BrokerKind.ETRADE)
        assert not registry.has('NOT_A_BROKER')

    def test_unknown_and_unregistered_brokers(self):
        registry = AdapterRegistry()
        with pytest.raises(UnsupportedBrokerError):
            registry.get('NOT_A_BROKER')
        with pytest.raises(UnsupportedBrokerError) as exc_info:
            registry.get(BrokerKind.ETRADE)
        assert exc_info.value.details['supported'] == []

    @pytest.mark.asyncio
    async def test_close_releases_client_session(self, vault, adapter, client):
        client.close = AsyncMock()
        registry = create_default_registry(vault)
        registry.register(adapter)

        await registry.close()

        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_continues_after_failure(self, vault, adapter, client):
        client.close = AsyncMock(side_effect=RuntimeError("already closed"))
        registry = AdapterRegistry()
        registry.register(adapter)
        other = MagicMock(broker=BrokerKind.CSV_IMPORT)
        other.close = AsyncMock()
        registry.register(other)

        await registry.close()

        other.close.assert_awaited_once()

    def test_default_registry_without_etrade_credentials(self, vault):
        registry = create_default_registry(vault)
        assert set(registry.supported_brokers()) == {BrokerKind.CSV_IMPORT, BrokerKind.OFX_IMPORT}

    def test_default_registry_with_etrade_credentials(self, vault, monkeypatch):
        from brokerbridge.utils.config import reset_config
        monkeypatch.setenv("ETRADE_CONSUMER_KEY", "key")
        monkeypatch.setenv("ETRADE_CONSUMER_SECRET", "secret")
        reset_config()

        registry = create_default_registry(vault)
        assert registry.has(BrokerKind.ETRADE)
