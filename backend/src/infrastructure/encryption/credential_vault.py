"""Credential encryption for connector instances using AES-256-GCM.

Each credential value is encrypted on its own, so updating one secret
never re-encrypts the others.

Security considerations:
- Uses AES-256-GCM for authenticated encryption
- Derives encryption key from CREDENTIAL_VAULT_KEY using HKDF
- Each encryption uses a unique random nonce
- Ciphertext tokens are versioned ("v1:<base64(nonce || ciphertext)>")
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import get_settings
from connectors.errors import CredentialVaultError
from connectors.ports import CredentialVault


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "v1:"
NONCE_SIZE = 12


class AesGcmCredentialVault(CredentialVault):
    """AES-256-GCM credential vault.

    Example:
        vault = AesGcmCredentialVault("key material")
        token = vault.encrypt("api-key-123")
        assert vault.decrypt(token) == "api-key-123"
    """

    # HKDF info string for credential encryption
    HKDF_INFO = b"connector-credential-vault-v1"

    def __init__(self, key_material: Optional[str] = None):
        """Initialize vault.

        Args:
            key_material: Base key material. Defaults to CREDENTIAL_VAULT_KEY from settings.

        Raises:
            CredentialVaultError: If no key material is available
        """
        material = key_material if key_material is not None else get_settings().CREDENTIAL_VAULT_KEY
        if not material:
            raise CredentialVaultError("CREDENTIAL_VAULT_KEY is not set")
        self._aesgcm = AESGCM(self._derive_key(material.encode()))

    def _derive_key(self, material: bytes) -> bytes:
        """Derive 256-bit encryption key using HKDF."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,  # 256 bits
            salt=None,
            info=self.HKDF_INFO,
        )
        return hkdf.derive(material)

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise CredentialVaultError(f"Only strings can be encrypted, got {type(plaintext).__name__}")

        # Random 96-bit nonce per value
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return TOKEN_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Raises:
            CredentialVaultError: If the token is malformed, was produced with
                another key, or was tampered with
        """
        if not isinstance(ciphertext, str) or not ciphertext.startswith(TOKEN_PREFIX):
            raise CredentialVaultError("Unsupported credential token format")

        try:
            raw = base64.b64decode(ciphertext[len(TOKEN_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialVaultError(f"Credential token is not valid base64: {e}")

        if len(raw) <= NONCE_SIZE:
            raise CredentialVaultError("Credential token is truncated")

        try:
            plaintext = self._aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag:
            logger.error("Credential decryption failed - invalid key or tampered data")
            raise CredentialVaultError("Decryption failed - invalid key or tampered data")

        return plaintext.decode("utf-8")
