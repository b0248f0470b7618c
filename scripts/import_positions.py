#!/usr/bin/env python3
"""
Import a position file and print the aggregated result.

Parses a CSV or OFX position download into an in-memory store, runs a full
sync, and prints the detected broker, rejected rows and aggregated positions.
Nothing is persisted.

Usage:
    python scripts/import_positions.py FILE [--org-id ORG] [--mapping JSON] [--nickname NAME]
"""

import argparse
import asyncio
import json
import logging
import os
import secrets
import sys

from dotenv import load_dotenv

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from brokerbridge.services.aggregated_positions_service import AggregatedPositionsService, PositionFilters  # noqa: E402
from brokerbridge.services.connection_sync_service import ConnectionSyncService, SyncOptions  # noqa: E402
from brokerbridge.utils.config import get_config  # noqa: E402
from brokerbridge.utils.credential_vault import CredentialVault  # noqa: E402
from brokerbridge.utils.errors import AdapterError  # noqa: E402
from brokerbridge.utils.portfolio.adapter_registry import create_default_registry  # noqa: E402
from brokerbridge.utils.portfolio.file_import_provider import is_ofx_upload, preview_file_import  # noqa: E402
from brokerbridge.utils.portfolio.models import BrokerKind  # noqa: E402
from brokerbridge.utils.portfolio.repository import InMemoryPortfolioRepository  # noqa: E402

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import a CSV/OFX position file and show aggregated positions")
    parser.add_argument("file", help="Path to the CSV or OFX/QFX file")
    parser.add_argument("--org-id", default="local", help="Organization id to import under")
    parser.add_argument("--mapping", help="Explicit column mapping as JSON, e.g. '{\"symbol\": \"Ticker\", \"quantity\": \"Shares\"}'")
    parser.add_argument("--nickname", help="Account nickname")
    return parser.parse_args(argv)


async def import_file(path: str, org_id: str, mapping=None, nickname=None) -> int:
    with open(path, encoding='utf-8-sig') as f:
        content = f.read()
    file_name = os.path.basename(path)

    config = get_config()
    # An in-memory run does not need a stable key
    vault = CredentialVault(config.encryption_key or secrets.token_urlsafe(48))
    repository = InMemoryPortfolioRepository()
    sync_service = ConnectionSyncService(repository, create_default_registry(vault, config), config)
    positions_service = AggregatedPositionsService(repository)

    preview = preview_file_import(content, file_name, mapping)
    detection = preview.get('detection') or {}
    print(f"📄 {file_name}: {preview['format']}, broker {detection.get('broker', 'n/a')} "
          f"({detection.get('confidence', 'n/a')} confidence)")
    print(f"   Column mapping: {json.dumps(preview['column_mapping'])}")

    broker = BrokerKind.OFX_IMPORT if is_ofx_upload(file_name, content) else BrokerKind.CSV_IMPORT
    created = await sync_service.create_connection(org_id, "cli", broker.value, {
        'file_content': content,
        'file_name': file_name,
        'column_mapping': mapping,
        'account_nickname': nickname,
    })
    result = await sync_service.sync_connection(created['connection_id'], SyncOptions())

    print(f"✅ Imported {result.lots_imported} positions, {result.rows_skipped} rows skipped, "
          f"{result.instruments_created} instruments")
    for error in result.row_errors:
        print(f"   ⚠️ Row {error['row']}: {error['reason']} ({error['value']})")
    for error in result.per_account_errors:
        print(f"   ❌ Account {error.external_id}: {error.message}")

    positions = positions_service.get_aggregated_positions(PositionFilters(org_id=org_id))
    print()
    print(f"{'SYMBOL':<24}{'CLASS':<8}{'QUANTITY':>14}{'AVG PRICE':>14}{'MARKET VALUE':>16}{'UNREALIZED':>14}")
    for position in positions:
        print(f"{position.symbol:<24}{position.asset_class.value:<8}"
              f"{float(position.total_quantity):>14,.4f}{float(position.weighted_average_price):>14,.2f}"
              f"{float(position.total_market_value):>16,.2f}{float(position.total_unrealized_pl):>14,.2f}")

    summary = positions_service.get_portfolio_summary(org_id)
    print()
    print(f"Total market value: {summary['total_market_value']:,.2f}  "
          f"cost basis: {summary['total_cost_basis']:,.2f}  "
          f"unrealized: {summary['total_unrealized_pl']:,.2f}")
    return 0 if result.success else 1


def main(argv=None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s - %(name)s - %(message)s")
    args = parse_args(argv)

    mapping = None
    if args.mapping:
        try:
            mapping = json.loads(args.mapping)
        except json.JSONDecodeError as e:
            print(f"❌ --mapping is not valid JSON: {e}")
            return 2

    try:
        return asyncio.run(import_file(args.file, args.org_id, mapping, args.nickname))
    except AdapterError as e:
        print(f"❌ {e.code}: {e.message}")
        if e.details:
            print(json.dumps(e.details, indent=2, default=str))
        return 1
    except OSError as e:
        print(f"❌ Cannot read {args.file}: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
