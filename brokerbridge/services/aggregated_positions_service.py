"""
Aggregated positions service.

Read-only view over the latest snapshot generation of every account in an
organization, combined across accounts and brokers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from brokerbridge.utils.errors import ValidationError
from brokerbridge.utils.instrument_parser import AssetClass
from brokerbridge.utils.portfolio.aggregated_calculations import (
    AggregatedPosition,
    aggregate_positions,
    calculate_portfolio_summary,
    select_latest_generation,
)
from brokerbridge.utils.portfolio.models import Account, Connection, PositionSnapshot, ensure_utc
from brokerbridge.utils.portfolio.repository import PortfolioRepository

logger = logging.getLogger(__name__)


@dataclass
class PositionFilters:
    org_id: str
    broker: Optional[str] = None            # BrokerKind or detected broker source
    account_id: Optional[str] = None
    asset_class: Optional[AssetClass] = None
    symbol: Optional[str] = None            # Matches the symbol or an option's underlying
    options_only: bool = False
    as_of: Optional[datetime] = None


class AggregatedPositionsService:
    """Cross-account position aggregation for an organization."""

    def __init__(self, repository: PortfolioRepository):
        self.repository = repository

    def _load(self, org_id: str, as_of: Optional[datetime] = None,
              broker: Optional[str] = None, account_id: Optional[str] = None):
        if not org_id:
            raise ValidationError("org_id is required")
        as_of = ensure_utc(as_of)

        connections: Dict[str, Connection] = {c.id: c for c in self.repository.list_connections(org_id)}
        if broker:
            wanted = broker.upper()
            connections = {
                cid: c for cid, c in connections.items()
                if c.broker.value == wanted or (c.broker_source or '').upper() == wanted
            }

        accounts: Dict[str, Account] = {
            a.id: a for a in self.repository.list_accounts_for_org(org_id)
            if a.connection_id in connections
        }
        if account_id:
            accounts = {aid: a for aid, a in accounts.items() if aid == account_id}

        snapshots: List[PositionSnapshot] = select_latest_generation(
            self.repository.list_snapshots(accounts.keys(), as_of=as_of)
        )
        instruments = self.repository.get_instruments(s.instrument_id for s in snapshots)
        return snapshots, instruments, accounts, connections

    def get_aggregated_positions(self, filters: PositionFilters) -> List[AggregatedPosition]:
        """
        Aggregate the latest holdings per instrument.

        Returns:
            Positions sorted by total market value, largest first
        """
        snapshots, instruments, accounts, connections = self._load(
            filters.org_id, filters.as_of, filters.broker, filters.account_id
        )
        positions = aggregate_positions(snapshots, instruments, accounts, connections)

        if filters.asset_class:
            asset_class = AssetClass(filters.asset_class)
            positions = [p for p in positions if p.asset_class == asset_class]
        if filters.options_only:
            positions = [p for p in positions if p.asset_class == AssetClass.OPTION]
        if filters.symbol:
            symbol = filters.symbol.strip().upper()
            positions = [p for p in positions if p.symbol == symbol or p.underlying_symbol == symbol]

        logger.info(
            f"📊 Aggregated {len(positions)} positions across {len(accounts)} accounts for org {filters.org_id}"
        )
        return positions

    def get_portfolio_summary(self, org_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        as_of = ensure_utc(as_of)
        positions = self.get_aggregated_positions(PositionFilters(org_id=org_id, as_of=as_of))
        account_ids = [a.id for a in self.repository.list_accounts_for_org(org_id)]
        cash_balances = self.repository.list_cash_balances(account_ids, as_of=as_of)
        summary = calculate_portfolio_summary(positions, cash_balances)
        summary['org_id'] = org_id
        summary['as_of'] = as_of.isoformat() if as_of else None
        return summary

    def get_position_details(self, org_id: str, instrument_id: str,
                             as_of: Optional[datetime] = None) -> Optional[AggregatedPosition]:
        """One instrument's aggregate with its latest lot per account, or None when not held."""
        snapshots, instruments, accounts, connections = self._load(org_id, as_of)
        held = [s for s in snapshots if s.instrument_id == instrument_id]
        if not held:
            return None
        positions = aggregate_positions(held, instruments, accounts, connections)
        return positions[0] if positions else None
