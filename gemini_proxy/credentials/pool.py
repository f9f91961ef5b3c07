"""Upstream credential pool.

Holds the Gemini API keys loaded once at startup. Each outgoing request
draws one key uniformly at random; there is no rotation state.
"""

import random

from gemini_proxy.config.settings import Settings
from gemini_proxy.errors import ConfigurationError, CredentialError

CREDENTIAL_PREFIX = "AIza"
MIN_CREDENTIAL_LENGTH = 21


class CredentialPool:
    """Immutable, ordered set of upstream credentials."""

    def __init__(self, credentials: list[str]):
        # dict.fromkeys dedupes while keeping the configured order
        self._credentials: tuple[str, ...] = tuple(dict.fromkeys(credentials))
        if not self._credentials:
            raise ConfigurationError("Credential pool is empty")

    @classmethod
    def load(cls, settings: Settings) -> "CredentialPool":
        """Build the pool from GEMINI_API_KEYS (or API_KEYS).

        Raises:
            ConfigurationError: neither variable yields a usable key.
        """
        keys = settings.api_keys_list
        if not keys:
            raise ConfigurationError(
                "GEMINI_API_KEYS environment variable is required"
            )
        return cls(keys)

    @property
    def credentials(self) -> tuple[str, ...]:
        return self._credentials

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, credential: object) -> bool:
        return credential in self._credentials

    def pick(self) -> str:
        """Independent uniform draw from the pool."""
        return random.choice(self._credentials)

    def pick_valid(self) -> str:
        """Draw a credential and reject it if it is malformed.

        Raises:
            CredentialError: the drawn key fails ``validate``.
        """
        credential = self.pick()
        if not self.validate(credential):
            raise CredentialError("Invalid or missing API key configuration")
        return credential

    @staticmethod
    def validate(credential: str | None) -> bool:
        if not credential or not isinstance(credential, str):
            return False
        return credential.startswith(CREDENTIAL_PREFIX) and len(credential) >= MIN_CREDENTIAL_LENGTH


def credential_prefix(credential: str) -> str:
    """Short prefix of a credential, safe for log correlation."""
    return f"{credential[:10]}..."
