"""
Unit tests for encryption utilities.

The EncryptionService keeps the scanner service API key encrypted at rest
in the local state database.
"""

import base64
import os
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet, InvalidToken

from shared.encryption import EncryptionService


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_initialization_with_provided_key(self):
        """Test that EncryptionService initializes with a provided key."""
        test_key = Fernet.generate_key().decode()

        service = EncryptionService(encryption_key=test_key)

        assert service.key == test_key.encode()
        assert service.cipher is not None

    def test_initialization_with_env_key(self):
        """Test that EncryptionService loads key from SCANNER_ENCRYPTION_KEY."""
        test_key = Fernet.generate_key().decode()

        with patch.dict(os.environ, {'SCANNER_ENCRYPTION_KEY': test_key}):
            service = EncryptionService()
            assert service.key == test_key.encode()

    def test_initialization_generates_ephemeral_key(self):
        """Test that a key is generated when none is configured."""
        with patch.dict(os.environ, {}, clear=True):
            service = EncryptionService()

            assert service.key
            assert service.cipher is not None

    def test_round_trip_api_key(self):
        """Test that an API key survives encryption and decryption."""
        service = EncryptionService()
        api_key = "sk_live_scanner_1234567890"

        ciphertext = service.encrypt(api_key)

        assert ciphertext != api_key
        base64.b64decode(ciphertext)
        assert service.decrypt(ciphertext) == api_key

    def test_empty_values_pass_through(self):
        """Test that empty strings are not encrypted."""
        service = EncryptionService()

        assert service.encrypt("") == ""
        assert service.decrypt("") == ""

    def test_same_key_decrypts_across_instances(self):
        """Test that a stored key can be read back after a restart."""
        key = EncryptionService.generate_key()
        ciphertext = EncryptionService(encryption_key=key).encrypt("secret")

        assert EncryptionService(encryption_key=key).decrypt(ciphertext) == "secret"

    def test_wrong_key_fails(self):
        """Test that decrypting with another key raises InvalidToken."""
        ciphertext = EncryptionService().encrypt("secret")

        with pytest.raises(InvalidToken):
            EncryptionService(encryption_key=EncryptionService.generate_key()).decrypt(ciphertext)
