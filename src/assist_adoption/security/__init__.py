"""Identifier encryption and secret lookup."""

from .encryption import DecryptionError, DeterministicEncryptionService
from .secrets import SecretNotFoundError, SecretProvider, SettingsSecretProvider

__all__ = [
    "DecryptionError",
    "DeterministicEncryptionService",
    "SecretNotFoundError",
    "SecretProvider",
    "SettingsSecretProvider",
]
