"""
Supabase client factory for the BrokerBridge persistence layer.
"""

import logging
from typing import Optional

from supabase import Client, create_client

from brokerbridge.utils.config import get_config
from brokerbridge.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Create (once) and return a Supabase client using the service role key.
    This provides admin access to the database for server-side operations.

    Raises:
        ConfigurationError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is missing
    """
    global _client
    if _client is not None:
        return _client

    config = get_config()
    if not config.supabase_url or not config.supabase_service_key:
        raise ConfigurationError("Supabase URL or service role key not found in environment variables")

    try:
        _client = create_client(config.supabase_url, config.supabase_service_key)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        raise
    return _client
