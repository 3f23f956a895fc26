"""
Error taxonomy for the usage monitor.

Failures are typed so the scheduler can decide whether a provider is retried
on the next tick or flagged as needing attention.
"""

from typing import Optional


class MonitorError(Exception):
    """Base class for all monitor failures."""


class CredentialMissing(MonitorError):
    """Raised when no secret is stored for a provider."""

    def __init__(self, provider_id: str):
        super().__init__(f"No credential stored for provider '{provider_id}'")
        self.provider_id = provider_id


class ProviderFailure(MonitorError):
    """A provider adapter call failed.

    Subclasses tell the caller whether retrying on the next tick is useful.
    """
    transient = False

    def __init__(self, provider_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
        self.status_code = status_code


class TransientProviderFailure(ProviderFailure):
    """Network error, timeout, 5xx or rate limiting. Retried next tick."""
    transient = True


class PermanentProviderFailure(ProviderFailure):
    """Auth failure, other 4xx or an unexpected payload shape. Needs attention."""
    transient = False


class StoreFailure(MonitorError):
    """The persistence layer could not complete an operation."""


class SerializationFailure(MonitorError):
    """Stored JSON could not be decoded into the expected structure."""
