"""Credential encryption for stored IMAP passwords.

Stored passwords use the ``"<iv hex>:<ciphertext hex>"`` format: AES-256-CBC
with PKCS7 padding and a random 16-byte IV per value. The 32-byte key is the
configured secret encoded as UTF-8, right-padded with spaces and cut to 32, which
keeps records written by earlier deployments readable.

Usage:
    >>> from inboxsync.privacy.encryption import AesCbcCredentialCipher
    >>> cipher = AesCbcCredentialCipher("my-secret")
    >>> token = cipher.encrypt("app-password")
    >>> cipher.decrypt(token)
    'app-password'
"""

from __future__ import annotations

import logging
import secrets
from typing import Protocol

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import CredentialDecryptionError

logger = logging.getLogger(__name__)

# Constants
KEY_SIZE_BYTES = 32  # AES-256
IV_SIZE_BYTES = 16  # AES block size


class CredentialCipher(Protocol):
    """Decrypts stored mailbox credentials."""

    def decrypt(self, encrypted: str) -> str:
        ...


class AesCbcCredentialCipher:
    """AES-256-CBC cipher for the ``iv:ciphertext`` hex storage format."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Credential encryption secret must not be empty")
        self._key = secret.encode("utf-8").ljust(KEY_SIZE_BYTES, b" ")[:KEY_SIZE_BYTES]

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(IV_SIZE_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a stored credential.

        Raises:
            CredentialDecryptionError: If the value is malformed, the key is
                wrong, or the padding does not verify.
        """
        try:
            iv_hex, _, cipher_hex = encrypted.partition(":")
            if not iv_hex or not cipher_hex:
                raise ValueError("expected '<iv>:<ciphertext>'")
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, TypeError, UnicodeDecodeError) as exc:
            logger.error(f"Credential decryption failed: {exc.__class__.__name__}")
            raise CredentialDecryptionError() from exc


__all__ = ["AesCbcCredentialCipher", "CredentialCipher"]
