"""
Error taxonomy for BrokerBridge ingestion and sync.

Every failure that crosses a component boundary is an AdapterError carrying
a human readable message, a stable machine code and optional details. Row
level problems are not exceptions: they are collected as RowError records
and returned alongside the rows that parsed successfully.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional


class AdapterError(Exception):
    """Base exception for every BrokerBridge failure surfaced to callers."""

    code = "ADAPTER_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None,
                 original_error: Optional[Exception] = None):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        self.original_error = original_error
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'error': True,
            'message': self.message,
            'code': self.code,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': datetime.now().isoformat()
        }


class ValidationError(AdapterError):
    code = "VALIDATION_ERROR"


class ParseError(AdapterError):
    """The file could not be turned into position rows at all."""
    code = "PARSE_ERROR"


class AuthExpiredError(AdapterError):
    """Stored broker tokens were rejected; the user must re-authenticate."""
    code = "AUTH_EXPIRED"


class IntegrityError(AdapterError):
    """An encrypted blob failed authentication or could not be decoded."""
    code = "INTEGRITY_ERROR"


class ProviderError(AdapterError):
    """Upstream broker API failure (timeout, 5xx, unexpected payload)."""
    code = "PROVIDER_ERROR"
    retryable = True


class ZeroAccountsError(AdapterError):
    code = "ZERO_ACCOUNTS"


class SyncConflictError(AdapterError):
    code = "SYNC_CONFLICT"


class ConnectionNotFoundError(AdapterError):
    code = "NOT_FOUND"


class UnsupportedBrokerError(AdapterError):
    code = "UNSUPPORTED_BROKER"


class ConfigurationError(AdapterError):
    code = "CONFIGURATION_ERROR"


@dataclass
class RowError:
    """A single rejected input row."""
    row: int                    # 1-based line number in the source file
    value: Any                  # Offending value (or the raw row)
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        if not isinstance(self.value, (str, int, float, type(None))):
            data['value'] = str(self.value)
        return data
