"""Encryption utilities for storing the service API key at rest."""

import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class EncryptionService:
    """Handles symmetric (Fernet) encryption and decryption of credentials."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Fernet key. If not provided, loaded from the
                          SCANNER_ENCRYPTION_KEY env var, else a throwaway key
                          is generated (stored credentials will not survive a restart)
        """
        if encryption_key:
            self.key = encryption_key.encode()
        else:
            env_key = os.getenv('SCANNER_ENCRYPTION_KEY')
            if env_key:
                self.key = env_key.encode()
            else:
                logger.warning("SCANNER_ENCRYPTION_KEY not set, generating an ephemeral key")
                self.key = Fernet.generate_key()

        self.cipher = Fernet(self.key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        if not plaintext:
            return ""

        encrypted_bytes = self.cipher.encrypt(plaintext.encode())
        return base64.b64encode(encrypted_bytes).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Args:
            ciphertext: Base64-encoded encrypted string

        Returns:
            Decrypted plaintext string
        """
        if not ciphertext:
            return ""

        encrypted_bytes = base64.b64decode(ciphertext.encode())
        return self.cipher.decrypt(encrypted_bytes).decode()

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode()
