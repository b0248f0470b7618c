"""
E*TRADE live broker adapter.

Wraps ETradeOAuthClient: the OAuth handshake produces access tokens that
are sealed in the credential vault immediately, and every later call
decrypts them again via resume(). Positions come from the account
portfolio endpoint and are mapped to RawPositionRow records.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from brokerbridge.utils.credential_vault import CredentialVault
from brokerbridge.utils.errors import IntegrityError, ProviderError, RowError, ValidationError
from brokerbridge.utils.instrument_parser import OptionRight, build_occ_symbol
from brokerbridge.utils.portfolio.abstract_provider import (
    BrokerAccount,
    BrokerAdapter,
    ConnectionHandle,
    RawCashPayload,
    RawPositionPayload,
    RawPositionRow,
)
from brokerbridge.utils.portfolio.csv_parser import RowRejected, parse_numeric_field
from brokerbridge.utils.portfolio.etrade_oauth import ETradeOAuthClient
from brokerbridge.utils.portfolio.models import BrokerKind, utc_now

logger = logging.getLogger(__name__)

MAX_PORTFOLIO_PAGES = 20
SECURITY_TYPE_LABELS = {
    'EQ': 'Equity',
    'OPTN': 'Option',
    'MF': 'Mutual Fund',
    'MMF': 'Money Market',
    'BOND': 'Bond',
    'ETF': 'ETF',
}


def _as_list(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _mask(account_id: Optional[str]) -> Optional[str]:
    if not account_id:
        return None
    return f"****{str(account_id)[-4:]}"


class ETradeAdapter(BrokerAdapter):
    """E*TRADE accounts connected through OAuth 1.0a."""

    broker = BrokerKind.ETRADE

    def __init__(self, vault: CredentialVault, client: ETradeOAuthClient):
        self.vault = vault
        self.client = client

    async def close(self) -> None:
        await self.client.close()

    async def begin_authorization(self, callback_url: Optional[str] = None) -> Dict[str, str]:
        """
        Start the OAuth handshake.

        Returns:
            authorization_url for the user, plus an encrypted oauth_state that
            must be handed back to authenticate() with the verifier
        """
        tokens = await self.client.get_request_token(callback_url)
        oauth_state = self.vault.encrypt({
            'request_token': tokens.token,
            'request_token_secret': tokens.token_secret,
        })
        logger.info("🔐 E*TRADE request token obtained")
        return {
            'authorization_url': self.client.get_authorization_url(tokens.token),
            'request_token': tokens.token,
            'oauth_state': oauth_state,
        }

    async def authenticate(self, auth_input: Dict[str, Any]) -> ConnectionHandle:
        verifier = (auth_input.get('verifier') or auth_input.get('oauth_verifier') or '').strip()
        if not verifier:
            raise ValidationError("OAuth verifier is required")

        if auth_input.get('oauth_state'):
            state = self.vault.decrypt(auth_input['oauth_state'])
            request_token = state.get('request_token')
            request_token_secret = state.get('request_token_secret')
        else:
            request_token = auth_input.get('request_token')
            request_token_secret = auth_input.get('request_token_secret')

        if not request_token or not request_token_secret:
            raise ValidationError("Request token and secret are required")

        tokens = await self.client.get_access_token(request_token, request_token_secret, verifier)
        stored = {
            'access_token': tokens.token,
            'access_token_secret': tokens.token_secret,
            'authorized_at': utc_now().isoformat(),
            'sandbox': self.client.sandbox,
        }
        logger.info("✅ E*TRADE access token obtained")
        return ConnectionHandle(
            broker=self.broker,
            encrypted_auth=self.vault.encrypt(stored),
            auth=stored,
            broker_source=self.broker.value,
        )

    async def resume(self, encrypted_auth: str) -> ConnectionHandle:
        stored = self.vault.decrypt(encrypted_auth)
        if not stored.get('access_token') or not stored.get('access_token_secret'):
            raise IntegrityError("Stored E*TRADE credentials are incomplete")
        return ConnectionHandle(
            broker=self.broker,
            encrypted_auth=encrypted_auth,
            auth=stored,
            broker_source=self.broker.value,
        )

    async def _get(self, handle: ConnectionHandle, endpoint: str) -> Dict[str, Any]:
        return await self.client.request_json(
            'GET', endpoint, handle.auth['access_token'], handle.auth['access_token_secret']
        )

    async def list_accounts(self, handle: ConnectionHandle) -> List[BrokerAccount]:
        data = await self._get(handle, '/v1/accounts/list.json')
        try:
            raw_accounts = _as_list(data['AccountListResponse']['Accounts']['Account'])
        except (KeyError, TypeError) as e:
            raise ProviderError("Unexpected E*TRADE account list response", original_error=e)

        accounts = []
        for raw in raw_accounts:
            if str(raw.get('accountStatus', '')).upper() == 'CLOSED':
                continue
            if not raw.get('accountIdKey'):
                logger.warning("Skipping E*TRADE account without accountIdKey")
                continue
            accounts.append(BrokerAccount(
                external_id=raw['accountIdKey'],
                nickname=raw.get('accountDesc') or raw.get('accountName'),
                masked_number=_mask(raw.get('accountId')),
                account_type=raw.get('accountType'),
            ))

        logger.info(f"📊 E*TRADE returned {len(accounts)} open accounts")
        return accounts

    async def fetch_positions(self, handle: ConnectionHandle, account: BrokerAccount) -> RawPositionPayload:
        raw_positions: List[Dict[str, Any]] = []
        page = 1
        while page and page <= MAX_PORTFOLIO_PAGES:
            endpoint = f"/v1/accounts/{account.external_id}/portfolio.json"
            if page > 1:
                endpoint += f"?pageNumber={page}"
            data = await self._get(handle, endpoint)

            portfolios = _as_list((data.get('PortfolioResponse') or {}).get('AccountPortfolio'))
            next_page = None
            for portfolio in portfolios:
                raw_positions.extend(_as_list(portfolio.get('Position')))
                if portfolio.get('nextPageNo'):
                    next_page = int(portfolio['nextPageNo'])
            page = next_page if next_page and next_page > page else None

        rows: List[RawPositionRow] = []
        errors: List[RowError] = []
        for index, position in enumerate(raw_positions, start=1):
            try:
                rows.append(map_position(position, index))
            except ValueError as e:
                product = position.get('Product') or {}
                value = getattr(e, 'value', None)
                if value is None:
                    value = product.get('symbol')
                errors.append(RowError(row=index, value=value, reason=str(e)))

        return RawPositionPayload(
            rows=rows,
            row_errors=errors,
            as_of=utc_now(),
            total_rows=len(raw_positions),
            metadata={'broker_source': self.broker.value},
        )

    async def fetch_cash(self, handle: ConnectionHandle, account: BrokerAccount) -> RawCashPayload:
        """Cash from the balance endpoint: Computed.cashBalance plus the money market sweep."""
        data = await self._get(
            handle, f"/v1/accounts/{account.external_id}/balance.json?instType=BROKERAGE&realTimeNAV=true"
        )
        balance = data.get('BalanceResponse') or {}
        computed = balance.get('Computed') or {}
        cash_section = balance.get('Cash') or {}
        try:
            cash = parse_numeric_field(computed.get('cashBalance', computed.get('netCash')), "cashBalance")
            money_market = parse_numeric_field(cash_section.get('moneyMktBalance'), "moneyMktBalance")
        except RowRejected as e:
            raise ProviderError(f"Unexpected E*TRADE balance response: {e}", original_error=e)

        breakdown = {}
        if cash is not None:
            breakdown['CASH'] = cash
        if money_market:
            breakdown['MONEY_MARKET'] = money_market
        return RawCashPayload(total=sum(breakdown.values(), Decimal('0')), breakdown=breakdown)


def _option_symbol(product: Dict[str, Any]) -> Optional[str]:
    try:
        expiration = date(int(product['expiryYear']), int(product['expiryMonth']), int(product['expiryDay']))
        right = OptionRight.CALL if str(product['callPut']).upper().startswith('C') else OptionRight.PUT
        strike = Decimal(str(product['strikePrice']))
    except (KeyError, TypeError, ValueError, ArithmeticError):
        return None
    if expiration.year < 100:
        expiration = expiration.replace(year=expiration.year + 2000)
    return build_occ_symbol(product['symbol'], expiration, right, strike)


def map_position(position: Dict[str, Any], row_number: int) -> RawPositionRow:
    """
    Map one E*TRADE portfolio position to a RawPositionRow.

    Raises:
        RowRejected: If the symbol or quantity is missing or a number is malformed
    """
    product = position.get('Product') or {}
    security_type = str(product.get('securityType') or '').upper()
    symbol = product.get('symbol')
    if not symbol:
        raise RowRejected("Symbol is required", position.get('symbolDescription'))

    if security_type == 'OPTN':
        symbol = _option_symbol(product) or position.get('symbolDescription') or symbol

    quantity = parse_numeric_field(position.get('quantity'), "Quantity")
    if quantity is None:
        raise RowRejected("Quantity is required", symbol)
    if str(position.get('positionType', '')).upper() == 'SHORT' and quantity > 0:
        quantity = -quantity

    average_price = parse_numeric_field(position.get('pricePaid'), "pricePaid")
    cost_basis = parse_numeric_field(position.get('totalCost'), "totalCost")
    market_value = parse_numeric_field(position.get('marketValue'), "marketValue")
    last_price = parse_numeric_field((position.get('Quick') or {}).get('lastTrade'), "lastTrade")
    unrealized_pl = parse_numeric_field(position.get('totalGain'), "totalGain")

    if average_price is None and cost_basis is not None and quantity != 0:
        average_price = cost_basis / abs(quantity)
    if cost_basis is None and average_price is not None:
        cost_basis = abs(quantity) * average_price
    if market_value is None and last_price is not None:
        market_value = quantity * last_price

    return RawPositionRow(
        symbol=symbol,
        quantity=quantity,
        row_number=row_number,
        average_price=average_price,
        cost_basis=cost_basis,
        last_price=last_price,
        market_value=market_value,
        unrealized_pl=unrealized_pl,
        asset_type=SECURITY_TYPE_LABELS.get(security_type, security_type or None),
        raw={'description': position.get('symbolDescription'), 'security type': SECURITY_TYPE_LABELS.get(security_type)},
    )
