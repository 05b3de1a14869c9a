"""Deterministic encryption of user identifiers.

The same identifier always encrypts to the same ciphertext under a given
key, so ciphertexts can be used as storage keys and looked up directly.

Key is SHA-256 of the secret's UTF-8 bytes. AES-256-CBC with PKCS7 padding
and a fixed IV. Output is URL-safe base64 with the trailing ``=`` stripped.
Changing the IV or the encoding invalidates every stored key: treat both
as part of the key.
"""

import base64
import binascii
import hashlib
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..config import Settings
from .secrets import SecretProvider

FIXED_IV = b"16bytes-fixed-iv"
_BLOCK_BITS = 128


class DecryptionError(Exception):
    """Ciphertext is not valid under this key (bad encoding, length or padding)."""

    pass


def _derive_key(secret: str) -> bytes:
    """Derive the 32-byte AES key from *secret*."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e


class DeterministicEncryptionService:
    """Encrypts and decrypts identifiers under one symmetric key."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("Key must be 32 bytes")
        self._key = key

    @classmethod
    def from_secret(cls, secret: str) -> "DeterministicEncryptionService":
        if not secret:
            raise ValueError("Secret must not be empty")
        return cls(_derive_key(secret))

    @classmethod
    async def create(
        cls, settings: Settings, secrets: SecretProvider
    ) -> "DeterministicEncryptionService":
        """Build the service for the currently active key."""
        secret = await secrets.get_secret(settings.encryption_key_secret_name)
        return cls.from_secret(secret)

    @classmethod
    async def create_for_key_rotation(
        cls, secrets: SecretProvider, secret_name: str
    ) -> "DeterministicEncryptionService":
        """Build the service for a named key, typically the rotation target."""
        secret = await secrets.get_secret(secret_name)
        return cls.from_secret(secret)

    @property
    def fingerprint(self) -> str:
        """Short stable identifier for this key. Safe to store."""
        return hashlib.sha256(b"key-fingerprint:" + self._key).hexdigest()[:16]

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(FIXED_IV))

    def encrypt(self, plaintext: str) -> str:
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return _encode(ciphertext)

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt *ciphertext*.

        Raises:
            DecryptionError: Malformed encoding, wrong length, bad padding
                (usually the wrong key) or non-UTF-8 plaintext.
        """
        if not ciphertext:
            raise DecryptionError("Ciphertext is empty")

        raw = _decode(ciphertext)
        if not raw or len(raw) % 16 != 0:
            raise DecryptionError("Ciphertext length is not a multiple of the block size")

        decryptor = self._cipher().decryptor()
        padded = decryptor.update(raw) + decryptor.finalize()

        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except ValueError as e:
            # UnicodeDecodeError is a ValueError too
            raise DecryptionError("Ciphertext does not decrypt under this key") from e

    def try_decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt, returning None instead of raising on invalid ciphertext."""
        try:
            return self.decrypt(ciphertext)
        except DecryptionError:
            return None
