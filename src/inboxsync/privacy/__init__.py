"""Privacy utilities: credential encryption."""

from .encryption import AesCbcCredentialCipher, CredentialCipher

__all__ = ["AesCbcCredentialCipher", "CredentialCipher"]
