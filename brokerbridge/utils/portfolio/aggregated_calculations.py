"""
Aggregated Portfolio Calculations

Pure functions that fold per-account position snapshots into cross-account,
cross-broker positions. Nothing here touches storage; callers pass in the
snapshots and the records they reference.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from brokerbridge.utils.instrument_parser import AssetClass, OptionRight
from brokerbridge.utils.portfolio.models import Account, CashBalance, Connection, Instrument, PositionSnapshot

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class AccountContribution:
    """One account's lot within an aggregated position."""
    account_id: str
    account_nickname: Optional[str]
    broker: str
    quantity: Decimal
    average_price: Optional[Decimal]
    cost_basis: Optional[Decimal]
    last_price: Optional[Decimal]
    market_value: Optional[Decimal]
    unrealized_pl: Optional[Decimal]
    as_of: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'account_nickname': self.account_nickname,
            'broker': self.broker,
            'quantity': float(self.quantity),
            'average_price': _money(self.average_price),
            'cost_basis': _money(self.cost_basis),
            'last_price': _money(self.last_price),
            'market_value': _money(self.market_value),
            'unrealized_pl': _money(self.unrealized_pl),
            'as_of': self.as_of.isoformat(),
        }


@dataclass
class AggregatedPosition:
    instrument_id: str
    symbol: str
    asset_class: AssetClass
    total_quantity: Decimal
    weighted_average_price: Decimal
    total_cost_basis: Decimal
    total_market_value: Decimal
    total_unrealized_pl: Decimal
    last_price: Optional[Decimal] = None
    name: Optional[str] = None
    underlying_symbol: Optional[str] = None
    strike: Optional[Decimal] = None
    expiration: Optional[date] = None
    right: Optional[OptionRight] = None
    multiplier: Optional[int] = None
    as_of: Optional[datetime] = None
    accounts: List[AccountContribution] = field(default_factory=list)

    @property
    def brokers(self) -> List[str]:
        return sorted({lot.broker for lot in self.accounts})

    @property
    def account_count(self) -> int:
        return len({lot.account_id for lot in self.accounts})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'instrument_id': self.instrument_id,
            'symbol': self.symbol,
            'name': self.name,
            'asset_class': self.asset_class.value,
            'total_quantity': float(self.total_quantity),
            'weighted_average_price': float(self.weighted_average_price),
            'total_cost_basis': float(self.total_cost_basis),
            'total_market_value': float(self.total_market_value),
            'total_unrealized_pl': float(self.total_unrealized_pl),
            'last_price': _money(self.last_price),
            'option': {
                'underlying_symbol': self.underlying_symbol,
                'strike': _money(self.strike),
                'expiration': self.expiration.isoformat() if self.expiration else None,
                'right': self.right.value if self.right else None,
                'multiplier': self.multiplier,
            } if self.asset_class == AssetClass.OPTION else None,
            'brokers': self.brokers,
            'account_count': self.account_count,
            'as_of': self.as_of.isoformat() if self.as_of else None,
            'accounts': [lot.to_dict() for lot in self.accounts],
        }


def select_latest_generation(snapshots: Iterable[PositionSnapshot]) -> List[PositionSnapshot]:
    """
    Keep only each account's most recent snapshot generation.

    Generations are ordered by as_of, ties broken by generation id so the
    choice is deterministic.
    """
    by_account: Dict[str, Dict[str, List[PositionSnapshot]]] = defaultdict(lambda: defaultdict(list))
    for snapshot in snapshots:
        by_account[snapshot.account_id][snapshot.generation].append(snapshot)

    latest: List[PositionSnapshot] = []
    for generations in by_account.values():
        _, newest = max(
            generations.items(),
            key=lambda item: (max(s.as_of for s in item[1]), item[0]),
        )
        latest.extend(newest)
    return latest


def select_latest_cash(balances: Iterable[CashBalance]) -> Dict[str, CashBalance]:
    """Most recent cash balance per account, ordered like select_latest_generation."""
    latest: Dict[str, CashBalance] = {}
    for balance in balances:
        current = latest.get(balance.account_id)
        if current is None or (balance.as_of, balance.generation) > (current.as_of, current.generation):
            latest[balance.account_id] = balance
    return latest


def weighted_average_price(lots: Iterable[Tuple[Decimal, Optional[Decimal]]]) -> Decimal:
    """
    Quantity-weighted average price: sum(|q| * avg) / sum(|q|).

    Lots without an average price are ignored; returns 0 when the total
    weighting quantity is 0.
    """
    numerator = ZERO
    denominator = ZERO
    for quantity, average_price in lots:
        if average_price is None:
            continue
        numerator += abs(quantity) * average_price
        denominator += abs(quantity)
    if denominator == 0:
        return ZERO
    return numerator / denominator


def _lot_cost_basis(snapshot: PositionSnapshot) -> Optional[Decimal]:
    if snapshot.cost_basis is not None:
        return snapshot.cost_basis
    if snapshot.average_price is not None:
        return abs(snapshot.quantity) * snapshot.average_price
    return None


def _latest_price(snapshots: List[PositionSnapshot]) -> Optional[Decimal]:
    priced = [s for s in snapshots if s.last_price is not None]
    if not priced:
        return None
    return max(priced, key=lambda s: s.as_of).last_price


def _broker_label(connection: Optional[Connection]) -> str:
    if connection is None:
        return "UNKNOWN"
    return connection.broker_source or connection.broker.value


def aggregate_positions(snapshots: Iterable[PositionSnapshot],
                        instruments: Dict[str, Instrument],
                        accounts: Dict[str, Account],
                        connections: Dict[str, Connection]) -> List[AggregatedPosition]:
    """
    Group snapshots by instrument across accounts and brokers.

    Market value per lot is the broker-reported value, falling back to
    quantity x the latest known price for the instrument.

    Returns:
        Aggregated positions sorted by market value, largest first
    """
    grouped: Dict[str, List[PositionSnapshot]] = defaultdict(list)
    for snapshot in snapshots:
        grouped[snapshot.instrument_id].append(snapshot)

    results: List[AggregatedPosition] = []
    for instrument_id, lots in grouped.items():
        instrument = instruments.get(instrument_id)
        if instrument is None:
            logger.warning(f"Snapshot references unknown instrument {instrument_id}, skipping")
            continue

        latest_price = _latest_price(lots)
        total_quantity = ZERO
        total_cost_basis = ZERO
        total_market_value = ZERO
        contributions = []

        for lot in lots:
            cost_basis = _lot_cost_basis(lot)
            market_value = lot.market_value
            if market_value is None and latest_price is not None:
                market_value = lot.quantity * latest_price

            total_quantity += lot.quantity
            total_cost_basis += cost_basis or ZERO
            total_market_value += market_value or ZERO

            account = accounts.get(lot.account_id)
            connection = connections.get(account.connection_id) if account else None
            contributions.append(AccountContribution(
                account_id=lot.account_id,
                account_nickname=account.nickname if account else None,
                broker=_broker_label(connection),
                quantity=lot.quantity,
                average_price=lot.average_price,
                cost_basis=cost_basis,
                last_price=lot.last_price,
                market_value=market_value,
                unrealized_pl=(market_value - cost_basis)
                if market_value is not None and cost_basis is not None else lot.unrealized_pl,
                as_of=lot.as_of,
            ))

        results.append(AggregatedPosition(
            instrument_id=instrument_id,
            symbol=instrument.symbol,
            name=instrument.name,
            asset_class=instrument.asset_class,
            total_quantity=total_quantity,
            weighted_average_price=weighted_average_price((l.quantity, l.average_price) for l in lots),
            total_cost_basis=total_cost_basis,
            total_market_value=total_market_value,
            total_unrealized_pl=total_market_value - total_cost_basis,
            last_price=latest_price,
            underlying_symbol=instrument.underlying_symbol,
            strike=instrument.strike,
            expiration=instrument.expiration,
            right=instrument.right,
            multiplier=instrument.multiplier,
            as_of=max(l.as_of for l in lots),
            accounts=sorted(contributions, key=lambda c: (c.broker, c.account_nickname or '', c.account_id)),
        ))

    results.sort(key=lambda p: (-p.total_market_value, p.symbol))
    return results


def calculate_portfolio_summary(positions: List[AggregatedPosition],
                                cash_balances: Optional[Iterable[CashBalance]] = None) -> Dict[str, Any]:
    """
    Totals and breakdowns by asset class and by broker.

    Args:
        positions: Aggregated positions
        cash_balances: Cash per account; only the latest balance of each account counts

    Returns:
        Summary dictionary ready for JSON serialization
    """
    total_market_value = sum((p.total_market_value for p in positions), ZERO)
    total_cost_basis = sum((p.total_cost_basis for p in positions), ZERO)
    total_unrealized_pl = total_market_value - total_cost_basis
    total_cash = sum((b.total for b in select_latest_cash(cash_balances or []).values()), ZERO)

    by_asset_class: Dict[str, Dict[str, Any]] = {}
    for position in positions:
        bucket = by_asset_class.setdefault(position.asset_class.value, {
            'market_value': ZERO, 'cost_basis': ZERO, 'position_count': 0,
        })
        bucket['market_value'] += position.total_market_value
        bucket['cost_basis'] += position.total_cost_basis
        bucket['position_count'] += 1

    by_broker: Dict[str, Dict[str, Any]] = {}
    for position in positions:
        for lot in position.accounts:
            bucket = by_broker.setdefault(lot.broker, {
                'market_value': ZERO, 'cost_basis': ZERO, 'accounts': set(), 'position_count': 0,
            })
            bucket['market_value'] += lot.market_value or ZERO
            bucket['cost_basis'] += lot.cost_basis or ZERO
            bucket['accounts'].add(lot.account_id)
            bucket['position_count'] += 1

    def percent_of_total(value: Decimal) -> float:
        if total_market_value == 0:
            return 0.0
        return float(value / total_market_value * 100)

    all_accounts = {lot.account_id for p in positions for lot in p.accounts}
    return {
        'total_market_value': float(total_market_value),
        'total_cost_basis': float(total_cost_basis),
        'total_unrealized_pl': float(total_unrealized_pl),
        'total_unrealized_pl_percent': float(total_unrealized_pl / total_cost_basis * 100)
        if total_cost_basis != 0 else 0.0,
        'total_cash': float(total_cash),
        'position_count': len(positions),
        'account_count': len(all_accounts),
        'by_asset_class': {
            asset_class: {
                'market_value': float(bucket['market_value']),
                'cost_basis': float(bucket['cost_basis']),
                'position_count': bucket['position_count'],
                'percent_of_portfolio': percent_of_total(bucket['market_value']),
            }
            for asset_class, bucket in sorted(by_asset_class.items())
        },
        'by_broker': {
            broker: {
                'market_value': float(bucket['market_value']),
                'cost_basis': float(bucket['cost_basis']),
                'account_count': len(bucket['accounts']),
                'position_count': bucket['position_count'],
                'percent_of_portfolio': percent_of_total(bucket['market_value']),
            }
            for broker, bucket in sorted(by_broker.items())
        },
    }
