"""
Tests for the E*TRADE OAuth 1.0a client: request signing, authorization
headers, token parsing and HTTP error mapping.
"""

import asyncio
from unittest.mock import MagicMock

import aiohttp
import pytest

from brokerbridge.utils.errors import AuthExpiredError, ProviderError, ValidationError
from brokerbridge.utils.portfolio.etrade_oauth import (
    AUTHORIZE_URL,
    ETradeOAuthClient,
    generate_signature,
)


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def install_session(client, status=200, body='', side_effect=None):
    session = MagicMock()
    session.closed = False
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = FakeResponse(status, body)
    client.session = session
    return session


@pytest.fixture
def client():
    return ETradeOAuthClient("consumer-key", "consumer-secret", sandbox=True)


class TestSignature:

    def test_reference_signature(self):
        params = {
            'status': 'Hello Ladies + Gentlemen, a signed OAuth request!',
            'oauth_consumer_key': 'xvz1evFS4wEEPTGEFPHBog',
            'oauth_nonce': 'kYjzVBB8Y0ZFabxSWbWovY3uYSQ2pTgmZeNu2VS4cg',
            'oauth_signature_method': 'HMAC-SHA1',
            'oauth_timestamp': '1318622958',
            'oauth_token': '370773112-GmHxMAgYyLbNEtIKZeRNFsMKPR9EyMZeS9weJAEb',
            'oauth_version': '1.0',
        }
        signature = generate_signature(
            'POST',
            'https://api.twitter.com/1.1/statuses/update.json?include_entities=true',
            params,
            'kAcSOqF21Fu85e7zjz7ZN2U4ZRhfV3WpwPAoE3Z7kBw',
            'LswwdoUaIvS8ltyTt5jkRh4J50vUPVVHtR2YPi5kE',
        )
        assert signature == 'hCtSmYh+iHYCEqBWrE7C7hYmtUk='

    def test_token_secret_changes_signature(self):
        params = {'oauth_nonce': 'n', 'oauth_timestamp': '1'}
        url = 'https://apisb.etrade.com/v1/accounts/list.json'
        assert generate_signature('GET', url, params, 'secret') != \
            generate_signature('GET', url, params, 'secret', 'token-secret')

    def test_url_case_does_not_change_signature(self):
        params = {'oauth_nonce': 'n', 'oauth_timestamp': '1'}
        assert generate_signature('get', 'HTTPS://APISB.ETRADE.COM/v1/x', params, 's') == \
            generate_signature('GET', 'https://apisb.etrade.com/v1/x', params, 's')


class TestAuthorizationHeader:

    def test_header_contains_sorted_oauth_params(self, client):
        header = client.build_authorization_header(
            'GET', 'https://apisb.etrade.com/oauth/request_token',
            extra_oauth_params={'oauth_callback': 'oob'},
            nonce='abc', timestamp='1700000000',
        )
        assert header.startswith('OAuth realm="", ')
        assert 'oauth_callback="oob"' in header
        assert 'oauth_consumer_key="consumer-key"' in header
        assert 'oauth_nonce="abc"' in header
        assert 'oauth_signature=' in header
        assert header.index('oauth_callback') < header.index('oauth_version')

    def test_header_is_deterministic_for_fixed_nonce(self, client):
        kwargs = dict(nonce='abc', timestamp='1700000000')
        url = 'https://apisb.etrade.com/v1/accounts/list.json'
        assert client.build_authorization_header('GET', url, **kwargs) == \
            client.build_authorization_header('GET', url, **kwargs)

    def test_missing_consumer_credentials(self):
        with pytest.raises(ValidationError):
            ETradeOAuthClient("", "secret")


class TestTokenFlow:

    @pytest.mark.asyncio
    async def test_get_request_token(self, client):
        session = install_session(client, body='oauth_token=req&oauth_token_secret=req-secret&oauth_callback_confirmed=true')
        tokens = await client.get_request_token()

        assert tokens.token == 'req'
        assert tokens.token_secret == 'req-secret'
        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://apisb.etrade.com/oauth/request_token'

    @pytest.mark.asyncio
    async def test_get_access_token(self, client):
        install_session(client, body='oauth_token=acc&oauth_token_secret=acc-secret')
        tokens = await client.get_access_token('req', 'req-secret', 'VERIFIER')
        assert (tokens.token, tokens.token_secret) == ('acc', 'acc-secret')

    @pytest.mark.asyncio
    async def test_incomplete_token_response(self, client):
        install_session(client, body='oauth_token=only')
        with pytest.raises(ProviderError):
            await client.get_request_token()

    def test_authorization_url(self, client):
        url = client.get_authorization_url('req token')
        assert url == f"{AUTHORIZE_URL}?key=consumer-key&token=req%20token"


class TestRequestJson:

    @pytest.mark.asyncio
    async def test_decodes_json(self, client):
        session = install_session(client, body='{"AccountListResponse": {}}')
        data = await client.request_json('GET', '/v1/accounts/list.json', 'tok', 'sec')

        assert data == {'AccountListResponse': {}}
        headers = session.request.call_args[1]['headers']
        assert headers['Accept'] == 'application/json'
        assert 'oauth_token="tok"' in headers['Authorization']

    @pytest.mark.asyncio
    async def test_empty_body(self, client):
        install_session(client, status=204, body='')
        assert await client.request_json('GET', '/v1/x', 'tok', 'sec') == {}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        install_session(client, body='<html>oops</html>')
        with pytest.raises(ProviderError):
            await client.request_json('GET', '/v1/x', 'tok', 'sec')

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_expired(self, client):
        install_session(client, status=401, body='oauth_problem=token_expired')
        with pytest.raises(AuthExpiredError):
            await client.request_json('GET', '/v1/x', 'tok', 'sec')

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, client):
        install_session(client, status=503, body='unavailable')
        with pytest.raises(ProviderError) as exc_info:
            await client.request_json('GET', '/v1/x', 'tok', 'sec')
        assert exc_info.value.retryable is True
        assert exc_info.value.details['status'] == 503

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [asyncio.TimeoutError(), aiohttp.ClientConnectionError("reset")])
    async def test_transport_failures(self, client, error):
        install_session(client, side_effect=error)
        with pytest.raises(ProviderError):
            await client.request_json('GET', '/v1/x', 'tok', 'sec')
