"""
Credential resolution.

The monitor only consumes secrets through the CredentialResolver protocol; the
vault behind it belongs to the host application. Secrets are never logged or
written to the database.
"""

import os
import re
from typing import Dict, Optional, Protocol

from dotenv import load_dotenv

from ai_usage_monitor.errors import CredentialMissing


class CredentialResolver(Protocol):
    """Key/value credential vault keyed by provider identity."""

    def store(self, provider_id: str, secret: str) -> None:
        ...

    def get(self, provider_id: str) -> str:
        """Return the secret, raising CredentialMissing when absent."""
        ...

    def delete(self, provider_id: str) -> None:
        ...

    def has(self, provider_id: str) -> bool:
        ...


class InMemoryCredentialResolver:
    """Dictionary-backed resolver for embedding and tests."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets: Dict[str, str] = dict(secrets or {})

    def store(self, provider_id: str, secret: str) -> None:
        if not secret:
            raise ValueError("secret cannot be empty")
        self._secrets[provider_id] = secret

    def get(self, provider_id: str) -> str:
        try:
            return self._secrets[provider_id]
        except KeyError:
            raise CredentialMissing(provider_id) from None

    def delete(self, provider_id: str) -> None:
        self._secrets.pop(provider_id, None)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._secrets


class EnvCredentialResolver:
    """Reads API keys from environment variables.

    ``openai-main`` resolves to ``AI_USAGE_MONITOR_OPENAI_MAIN_API_KEY``. A
    dotenv file is loaded once at construction without overriding variables
    that are already set.
    """

    def __init__(self, prefix: str = "AI_USAGE_MONITOR_", env_file: Optional[str] = ".env"):
        self.prefix = prefix
        if env_file:
            load_dotenv(env_file, override=False)

    def variable_name(self, provider_id: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9]", "_", provider_id).upper()
        return f"{self.prefix}{slug}_API_KEY"

    def store(self, provider_id: str, secret: str) -> None:
        if not secret:
            raise ValueError("secret cannot be empty")
        os.environ[self.variable_name(provider_id)] = secret

    def get(self, provider_id: str) -> str:
        secret = os.environ.get(self.variable_name(provider_id))
        if not secret:
            raise CredentialMissing(provider_id)
        return secret

    def delete(self, provider_id: str) -> None:
        os.environ.pop(self.variable_name(provider_id), None)

    def has(self, provider_id: str) -> bool:
        return bool(os.environ.get(self.variable_name(provider_id)))
