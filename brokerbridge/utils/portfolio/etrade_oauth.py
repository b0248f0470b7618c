"""
E*TRADE OAuth 1.0a client.

Implements the three-legged flow (request token -> user authorization ->
access token) and HMAC-SHA1 signed API calls over aiohttp. Upstream
failures are translated into the BrokerBridge error taxonomy here so the
adapter only deals with parsed JSON.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

import aiohttp

from brokerbridge.utils.errors import AuthExpiredError, ProviderError, ValidationError

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://apisb.etrade.com"
PRODUCTION_BASE_URL = "https://api.etrade.com"
AUTHORIZE_URL = "https://us.etrade.com/e/t/etws/authorize"
SIGNATURE_METHOD = "HMAC-SHA1"
OAUTH_VERSION = "1.0"


@dataclass
class OAuthTokens:
    token: str
    token_secret: str


def _encode(value: Any) -> str:
    return quote(str(value), safe='')


def _normalize_url(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, '', ''))


def generate_signature(method: str, url: str, params: Dict[str, str],
                       consumer_secret: str, token_secret: Optional[str] = None) -> str:
    """
    Compute an OAuth 1.0a HMAC-SHA1 signature.

    Args:
        method: HTTP method
        url: Request URL; any query string is folded into the signed parameters
        params: oauth_* parameters plus request query parameters
        consumer_secret: Application consumer secret
        token_secret: Request or access token secret, if any

    Returns:
        Base64 signature
    """
    all_params = list(params.items()) + parse_qsl(urlsplit(url).query, keep_blank_values=True)
    normalized = '&'.join(
        f"{k}={v}" for k, v in sorted((_encode(k), _encode(v)) for k, v in all_params)
    )
    base_string = '&'.join([method.upper(), _encode(_normalize_url(url)), _encode(normalized)])
    signing_key = f"{_encode(consumer_secret)}&{_encode(token_secret or '')}"

    digest = hmac.new(signing_key.encode('utf-8'), base_string.encode('utf-8'), hashlib.sha1).digest()
    return base64.b64encode(digest).decode('ascii')


class ETradeOAuthClient:
    """Signed HTTP access to the E*TRADE API."""

    def __init__(self, consumer_key: str, consumer_secret: str, sandbox: bool = True,
                 timeout_seconds: int = 30):
        if not consumer_key or not consumer_secret:
            raise ValidationError("E*TRADE consumer key and secret are required")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.sandbox = sandbox
        self.base_url = SANDBOX_BASE_URL if sandbox else PRODUCTION_BASE_URL
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds, connect=10)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': 'BrokerBridge/1.0'},
            )
        return self.session

    async def close(self) -> None:
        """Clean up HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()

    def build_authorization_header(self, method: str, url: str,
                                   extra_oauth_params: Optional[Dict[str, str]] = None,
                                   token_secret: Optional[str] = None,
                                   nonce: Optional[str] = None,
                                   timestamp: Optional[str] = None) -> str:
        oauth_params = {
            'oauth_consumer_key': self.consumer_key,
            'oauth_nonce': nonce or secrets.token_hex(16),
            'oauth_signature_method': SIGNATURE_METHOD,
            'oauth_timestamp': timestamp or str(int(time.time())),
            'oauth_version': OAUTH_VERSION,
        }
        oauth_params.update(extra_oauth_params or {})
        oauth_params['oauth_signature'] = generate_signature(
            method, url, oauth_params, self.consumer_secret, token_secret
        )
        header_parts = ', '.join(
            f'{_encode(k)}="{_encode(v)}"' for k, v in sorted(oauth_params.items())
        )
        return f'OAuth realm="", {header_parts}'

    async def _send(self, method: str, url: str, authorization: str,
                    accept_json: bool = False) -> Tuple[int, str]:
        session = await self._get_http_session()
        headers = {'Authorization': authorization}
        if accept_json:
            headers['Accept'] = 'application/json'

        try:
            async with session.request(method, url, headers=headers) as response:
                body = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"E*TRADE request timed out after {self.timeout_seconds}s",
                details={'url': _normalize_url(url)},
                original_error=e,
            )
        except aiohttp.ClientError as e:
            raise ProviderError(
                f"E*TRADE request failed: {e}",
                details={'url': _normalize_url(url)},
                original_error=e,
            )

        if status == 401:
            raise AuthExpiredError(
                "E*TRADE rejected the stored tokens; re-authentication required",
                details={'status': status},
            )
        if status < 200 or status >= 300:
            logger.warning(f"E*TRADE API error {status} for {_normalize_url(url)}: {body[:200]}")
            raise ProviderError(
                f"E*TRADE API error: {status}",
                details={'status': status, 'body': body[:500]},
            )
        return status, body

    @staticmethod
    def _parse_token_response(body: str) -> OAuthTokens:
        parsed = dict(parse_qsl(body))
        token = parsed.get('oauth_token')
        token_secret = parsed.get('oauth_token_secret')
        if not token or not token_secret:
            raise ProviderError("Invalid response from E*TRADE: missing token or secret")
        return OAuthTokens(token=token, token_secret=token_secret)

    async def get_request_token(self, callback_url: Optional[str] = None) -> OAuthTokens:
        """Step 1: obtain a request token bound to a callback ('oob' in the sandbox)."""
        callback = 'oob' if self.sandbox else (callback_url or 'oob')
        url = f"{self.base_url}/oauth/request_token"
        authorization = self.build_authorization_header(
            'GET', url, extra_oauth_params={'oauth_callback': callback}
        )
        _, body = await self._send('GET', url, authorization)
        return self._parse_token_response(body)

    def get_authorization_url(self, request_token: str) -> str:
        """Step 2: URL the user visits to approve access."""
        return f"{AUTHORIZE_URL}?key={_encode(self.consumer_key)}&token={_encode(request_token)}"

    async def get_access_token(self, request_token: str, request_token_secret: str,
                               verifier: str) -> OAuthTokens:
        """Step 3: exchange the verifier for an access token."""
        url = f"{self.base_url}/oauth/access_token"
        authorization = self.build_authorization_header(
            'GET', url,
            extra_oauth_params={'oauth_token': request_token, 'oauth_verifier': verifier},
            token_secret=request_token_secret,
        )
        _, body = await self._send('GET', url, authorization)
        return self._parse_token_response(body)

    async def request_json(self, method: str, endpoint: str, access_token: str,
                           access_token_secret: str) -> Dict[str, Any]:
        """Signed API call returning the decoded JSON body ({} when empty)."""
        url = f"{self.base_url}{endpoint}"
        authorization = self.build_authorization_header(
            method, url,
            extra_oauth_params={'oauth_token': access_token},
            token_secret=access_token_secret,
        )
        status, body = await self._send(method, url, authorization, accept_json=True)
        if status == 204 or not body.strip():
            return {}

        try:
            return json.loads(body)
        except ValueError as e:
            raise ProviderError("E*TRADE returned invalid JSON", original_error=e)
