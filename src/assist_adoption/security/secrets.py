"""Secret lookup for encryption keys."""

import logging
from abc import ABC, abstractmethod
from typing import Dict

from ..config import Settings

logger = logging.getLogger(__name__)


class SecretNotFoundError(Exception):
    """The named secret is not present in the secret store."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret '{name}' not found")


class SecretProvider(ABC):
    """Interface to a named-secret store."""

    @abstractmethod
    async def get_secret(self, name: str) -> str:
        """Return the secret value.

        Raises:
            SecretNotFoundError: No secret with that name.
        """
        pass


class SettingsSecretProvider(SecretProvider):
    """Serves secrets from the ENCRYPTION_SECRETS JSON map in settings."""

    def __init__(self, settings: Settings):
        self._secrets: Dict[str, str] = dict(settings.encryption_secrets)

    async def get_secret(self, name: str) -> str:
        value = self._secrets.get(name)
        if not value:
            logger.warning("Secret lookup failed for name '%s'", name)
            raise SecretNotFoundError(name)
        return value
