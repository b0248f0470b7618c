"""
Registry of broker adapters keyed by BrokerKind.
"""

import logging
from typing import Dict, List, Optional, Union

from brokerbridge.utils.config import BrokerBridgeConfig, get_config
from brokerbridge.utils.credential_vault import CredentialVault
from brokerbridge.utils.errors import UnsupportedBrokerError
from brokerbridge.utils.portfolio.abstract_provider import BrokerAdapter
from brokerbridge.utils.portfolio.etrade_oauth import ETradeOAuthClient
from brokerbridge.utils.portfolio.etrade_provider import ETradeAdapter
from brokerbridge.utils.portfolio.file_import_provider import CSVImportAdapter, OFXImportAdapter
from brokerbridge.utils.portfolio.models import BrokerKind

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Looks up the adapter responsible for a broker kind."""

    def __init__(self):
        self._adapters: Dict[BrokerKind, BrokerAdapter] = {}

    def register(self, adapter: BrokerAdapter) -> None:
        self._adapters[adapter.broker] = adapter
        logger.info(f"✅ Registered {adapter.get_provider_name()} adapter")

    def has(self, broker: Union[BrokerKind, str]) -> bool:
        try:
            return BrokerKind(broker) in self._adapters
        except ValueError:
            return False

    def get(self, broker: Union[BrokerKind, str]) -> BrokerAdapter:
        """
        Raises:
            UnsupportedBrokerError: If no adapter is registered for the broker
        """
        try:
            kind = BrokerKind(broker)
        except ValueError:
            raise UnsupportedBrokerError(f"Unknown broker: {broker}")
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise UnsupportedBrokerError(
                f"No adapter configured for {kind.value}",
                details={'supported': [b.value for b in self.supported_brokers()]},
            )
        return adapter

    def supported_brokers(self) -> List[BrokerKind]:
        return list(self._adapters.keys())

    async def close(self) -> None:
        """Close every adapter; one failing close does not stop the rest."""
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"❌ Error closing {adapter.get_provider_name()} adapter: {e}", exc_info=True)


def create_default_registry(vault: CredentialVault,
                            config: Optional[BrokerBridgeConfig] = None) -> AdapterRegistry:
    """File importers always; E*TRADE only when consumer credentials are configured."""
    config = config or get_config()
    registry = AdapterRegistry()
    registry.register(CSVImportAdapter(vault))
    registry.register(OFXImportAdapter(vault))

    if config.etrade_configured:
        client = ETradeOAuthClient(
            consumer_key=config.etrade_consumer_key,
            consumer_secret=config.etrade_consumer_secret,
            sandbox=config.etrade_sandbox,
            timeout_seconds=config.http_timeout_seconds,
        )
        registry.register(ETradeAdapter(vault, client))
    else:
        logger.warning("⚠️ ETRADE_CONSUMER_KEY/SECRET not set - E*TRADE connections disabled")

    return registry
