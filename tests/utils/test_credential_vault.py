"""
Tests for the credential vault: AES-256-GCM sealing, tamper detection,
master key validation and log redaction.
"""

import base64

import pytest

from brokerbridge.utils.credential_vault import (
    SALT_LENGTH,
    CredentialVault,
    decrypt_credentials,
    encrypt_credentials,
    generate_salt,
    mask_credential,
    redact_sensitive_fields,
)
from brokerbridge.utils.errors import ConfigurationError, IntegrityError, ValidationError

PAYLOAD = {
    'access_token': 'tok-123456789',
    'access_token_secret': 'sec-abcdefghi',
    'nested': {'sandbox': True, 'accounts': [1, 2, 3]},
}


class TestEncryptDecrypt:

    def test_round_trip(self, vault):
        blob = vault.encrypt(PAYLOAD)
        assert vault.decrypt(blob) == PAYLOAD

    def test_round_trip_with_explicit_salt(self, vault):
        salt = generate_salt()
        blob = vault.encrypt(PAYLOAD, salt=salt)
        assert blob.split('.')[0] == salt
        assert vault.decrypt(blob) == PAYLOAD

    def test_blob_has_four_segments_with_expected_lengths(self, vault):
        salt, iv, tag, ciphertext = (base64.b64decode(p) for p in vault.encrypt(PAYLOAD).split('.'))
        assert len(salt) == SALT_LENGTH
        assert len(iv) == 16
        assert len(tag) == 16
        assert len(ciphertext) > 0

    def test_fresh_salt_and_iv_per_encryption(self, vault):
        assert vault.encrypt(PAYLOAD) != vault.encrypt(PAYLOAD)

    def test_plaintext_not_visible_in_blob(self, vault):
        blob = vault.encrypt(PAYLOAD)
        assert 'tok-123456789' not in blob
        assert 'tok-123456789' not in base64.b64decode(blob.split('.')[3]).decode('latin-1')

    def test_module_helpers_use_environment_key(self):
        blob = encrypt_credentials({'k': 'v'})
        assert decrypt_credentials(blob) == {'k': 'v'}


class TestTamperDetection:

    def test_wrong_master_key(self, vault):
        blob = vault.encrypt(PAYLOAD)
        other = CredentialVault("another-master-key-0123456789abcdefghij")
        with pytest.raises(IntegrityError):
            other.decrypt(blob)

    def test_flipped_tag_byte(self, vault):
        salt, iv, tag, ciphertext = vault.encrypt(PAYLOAD).split('.')
        raw_tag = bytearray(base64.b64decode(tag))
        raw_tag[0] ^= 0x01
        tampered = '.'.join([salt, iv, base64.b64encode(bytes(raw_tag)).decode(), ciphertext])
        with pytest.raises(IntegrityError):
            vault.decrypt(tampered)

    def test_flipped_ciphertext_byte(self, vault):
        salt, iv, tag, ciphertext = vault.encrypt(PAYLOAD).split('.')
        raw = bytearray(base64.b64decode(ciphertext))
        raw[-1] ^= 0xFF
        tampered = '.'.join([salt, iv, tag, base64.b64encode(bytes(raw)).decode()])
        with pytest.raises(IntegrityError):
            vault.decrypt(tampered)

    def test_truncated_blob(self, vault):
        blob = vault.encrypt(PAYLOAD)
        with pytest.raises(IntegrityError):
            vault.decrypt(blob.rsplit('.', 1)[0])

    def test_invalid_base64(self, vault):
        with pytest.raises(IntegrityError):
            vault.decrypt("not.base64!.at.all")

    def test_wrong_segment_length(self, vault):
        short = base64.b64encode(b'x' * 8).decode()
        with pytest.raises(IntegrityError):
            vault.decrypt('.'.join([short, short, short, short]))

    def test_non_string_blob(self, vault):
        with pytest.raises(IntegrityError):
            vault.decrypt(None)


class TestMasterKeyValidation:

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("BROKER_ENCRYPTION_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            CredentialVault()

    def test_short_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            CredentialVault("too-short")
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    def test_invalid_salt(self, vault):
        with pytest.raises(ValidationError):
            vault.encrypt(PAYLOAD, salt=base64.b64encode(b'short').decode())


class TestRedaction:

    def test_mask_credential(self):
        assert mask_credential("abcdefgh1234") == "***1234"
        assert mask_credential("abc") == "***"
        assert mask_credential("") == "***"

    def test_redact_nested_structures(self):
        redacted = redact_sensitive_fields({
            'access_token': 'token-value-9876',
            'accountIdKey': 'abc',
            'user': {'password': 12345, 'name': 'Ann'},
            'items': [{'consumer_secret': 'shhhhhhh-4321'}],
            'count': 3,
        })
        assert redacted['access_token'] == '***9876'
        assert redacted['accountIdKey'] == '***'
        assert redacted['user'] == {'password': '***', 'name': 'Ann'}
        assert redacted['items'] == [{'consumer_secret': '***4321'}]
        assert redacted['count'] == 3

    def test_redact_does_not_mutate_input(self):
        original = {'token': 'abcdefgh'}
        redact_sensitive_fields(original)
        assert original == {'token': 'abcdefgh'}
