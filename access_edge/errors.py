"""
Error taxonomy for the edge agent.

Every failure the pipeline can contain is one of these classes. Components
catch them at their own boundary, count them in the HealthMonitor and keep
running. Only StorageInitError at startup stops the process.
"""

from typing import Optional


class EdgeAgentError(Exception):
    """Base class for all edge agent errors."""


class QualitySignalMissing(EdgeAgentError):
    """A frame arrived without one of the required quality signals."""

    def __init__(self, signal: str):
        super().__init__(f"quality signal missing: {signal}")
        self.signal = signal


class InferenceError(EdgeAgentError):
    """The external inference interface failed, timed out or returned garbage."""


class CacheSyncFailure(EdgeAgentError):
    """A cache delta could not be fetched or applied. The old snapshot stays."""


class DeliveryFailure(EdgeAgentError):
    """Retryable delivery failure (timeout, connection error, 5xx)."""


class DeliveryRejected(EdgeAgentError):
    """The backend refused a decision record. Terminal for that record."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


class CredentialExpired(EdgeAgentError):
    """The bearer token was refused; re-authenticate before the next call."""


class CredentialRevoked(EdgeAgentError):
    """The device secret itself was refused; the device must be re-provisioned."""


class StorageCorruption(EdgeAgentError):
    """A persisted row could not be decoded. Fatal for that row only."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class StorageInitError(EdgeAgentError):
    """The local store could not be opened or migrated at startup."""
