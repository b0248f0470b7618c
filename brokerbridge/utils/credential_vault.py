"""
Credential vault for broker secrets at rest.

Secrets (OAuth tokens, imported file metadata) are serialized to JSON and
sealed with AES-256-GCM. The key is derived per blob from the master key
(BROKER_ENCRYPTION_KEY) and a random salt using PBKDF2-HMAC-SHA512. Blobs
are stored as four base64 segments joined with '.':

    salt.iv.tag.ciphertext

The format is opaque to every other module.
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from brokerbridge.utils.errors import ConfigurationError, IntegrityError, ValidationError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100000
MIN_MASTER_KEY_LENGTH = 32
BLOB_SEPARATOR = "."

SENSITIVE_KEYS = (
    'password',
    'token',
    'secret',
    'key',
    'auth',
    'apikey',
    'accesstoken',
    'refreshtoken',
)


class CredentialVault:
    """
    Authenticated encryption for credential payloads.

    The master key is validated when the vault is built, so a misconfigured
    deployment fails at startup instead of on the first sync.
    """

    def __init__(self, master_key: Optional[str] = None):
        if master_key is None:
            master_key = os.getenv('BROKER_ENCRYPTION_KEY')
        if not master_key:
            raise ConfigurationError(
                "BROKER_ENCRYPTION_KEY environment variable is not set"
            )
        if len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"BROKER_ENCRYPTION_KEY must be at least {MIN_MASTER_KEY_LENGTH} characters long"
            )
        self._master_key = master_key.encode('utf-8')

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, data: Dict[str, Any], salt: Optional[Union[str, bytes]] = None) -> str:
        """
        Encrypt a credential payload.

        Args:
            data: JSON-serializable mapping to protect
            salt: Optional salt (raw bytes or base64 text); random when omitted

        Returns:
            Opaque blob in salt.iv.tag.ciphertext form
        """
        salt_bytes = self._coerce_salt(salt)
        iv = os.urandom(IV_LENGTH)
        plaintext = json.dumps(data, separators=(',', ':')).encode('utf-8')

        sealed = AESGCM(self._derive_key(salt_bytes)).encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return BLOB_SEPARATOR.join(
            base64.b64encode(part).decode('ascii')
            for part in (salt_bytes, iv, tag, ciphertext)
        )

    def decrypt(self, blob: str) -> Dict[str, Any]:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            IntegrityError: On tampering, a wrong master key or a malformed blob
        """
        if not isinstance(blob, str):
            raise IntegrityError("Encrypted credential blob must be a string")

        parts = blob.split(BLOB_SEPARATOR)
        if len(parts) != 4:
            raise IntegrityError("Invalid encrypted data format")

        try:
            salt, iv, tag, ciphertext = (
                base64.b64decode(part.encode('ascii'), validate=True) for part in parts
            )
        except (binascii.Error, ValueError) as e:
            raise IntegrityError("Encrypted data is not valid base64", original_error=e)

        if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise IntegrityError("Encrypted data has invalid segment lengths")

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError(
                "Failed to decrypt credentials: authentication tag mismatch",
                original_error=e,
            )

        try:
            data = json.loads(plaintext.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise IntegrityError("Decrypted credentials are not valid JSON", original_error=e)

        if not isinstance(data, dict):
            raise IntegrityError("Decrypted credentials are not an object")
        return data

    @staticmethod
    def _coerce_salt(salt: Optional[Union[str, bytes]]) -> bytes:
        if salt is None:
            return os.urandom(SALT_LENGTH)
        if isinstance(salt, str):
            try:
                salt = base64.b64decode(salt.encode('ascii'), validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationError("Salt must be base64 encoded", original_error=e)
        if len(salt) != SALT_LENGTH:
            raise ValidationError(f"Salt must be {SALT_LENGTH} bytes")
        return salt


def generate_salt() -> str:
    """Generate a random base64 salt suitable for CredentialVault.encrypt."""
    return base64.b64encode(os.urandom(SALT_LENGTH)).decode('ascii')


def encrypt_credentials(data: Dict[str, Any], salt: Optional[str] = None) -> str:
    """Encrypt with a vault built from BROKER_ENCRYPTION_KEY."""
    return CredentialVault().encrypt(data, salt)


def decrypt_credentials(blob: str) -> Dict[str, Any]:
    """Decrypt with a vault built from BROKER_ENCRYPTION_KEY."""
    return CredentialVault().decrypt(blob)


def mask_credential(value: str, visible_chars: int = 4) -> str:
    """Mask a credential for logs, keeping only the trailing characters."""
    if not value or len(value) <= visible_chars:
        return "***"
    return "***" + value[-visible_chars:]


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)


def redact_sensitive_fields(obj: Any) -> Any:
    """Return a copy of obj with every credential-looking field masked."""
    if isinstance(obj, dict):
        redacted = {}
        for key, value in obj.items():
            if isinstance(key, str) and _is_sensitive(key):
                redacted[key] = mask_credential(value) if isinstance(value, str) else "***"
            else:
                redacted[key] = redact_sensitive_fields(value)
        return redacted
    if isinstance(obj, list):
        return [redact_sensitive_fields(item) for item in obj]
    return obj
