"""
Environment configuration for BrokerBridge.

Values come from the process environment (optionally seeded from a .env
file) and are read once into a BrokerBridgeConfig instance.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_HTTP_TIMEOUT_SECONDS = 30
DEFAULT_MAX_ROW_ERRORS = 10
DEFAULT_SYNC_HISTORY_LIMIT = 5


class BrokerBridgeConfig:
    """Typed view over the BrokerBridge environment variables."""

    def __init__(self):
        self.encryption_key = os.getenv('BROKER_ENCRYPTION_KEY')
        self.etrade_consumer_key = os.getenv('ETRADE_CONSUMER_KEY')
        self.etrade_consumer_secret = os.getenv('ETRADE_CONSUMER_SECRET')
        self.etrade_sandbox = self._parse_bool_env('ETRADE_SANDBOX', default='true')
        self.etrade_callback_url = os.getenv('ETRADE_CALLBACK_URL', 'oob')
        self.http_timeout_seconds = self._parse_int_env(
            'BROKERBRIDGE_HTTP_TIMEOUT_SECONDS', DEFAULT_HTTP_TIMEOUT_SECONDS
        )
        self.max_row_errors = self._parse_int_env(
            'BROKERBRIDGE_MAX_ROW_ERRORS', DEFAULT_MAX_ROW_ERRORS
        )
        self.sync_history_limit = self._parse_int_env(
            'BROKERBRIDGE_SYNC_HISTORY_LIMIT', DEFAULT_SYNC_HISTORY_LIMIT
        )
        self.repository_backend = os.getenv('BROKERBRIDGE_REPOSITORY', 'memory').lower().strip()
        self.supabase_url = os.getenv('SUPABASE_URL')
        self.supabase_service_key = os.getenv('SUPABASE_SERVICE_ROLE_KEY')

    @staticmethod
    def _parse_bool_env(env_var: str, default: str) -> bool:
        """Parse boolean environment variable with defaults."""
        value = os.getenv(env_var, default).lower().strip()
        return value in ('true', '1', 'yes', 'on', 'enabled')

    @staticmethod
    def _parse_int_env(env_var: str, default: int) -> int:
        raw = os.getenv(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Invalid integer for {env_var}: {raw!r}, using {default}")
            return default
        return value if value > 0 else default

    @property
    def etrade_configured(self) -> bool:
        return bool(self.etrade_consumer_key and self.etrade_consumer_secret)


_config: Optional[BrokerBridgeConfig] = None


def get_config() -> BrokerBridgeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = BrokerBridgeConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None
