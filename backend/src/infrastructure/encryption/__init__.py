"""Infrastructure encryption utilities."""

from .credential_vault import AesGcmCredentialVault

__all__ = [
    "AesGcmCredentialVault",
]
