"""Exception hierarchy shared by adapters, the decoder, storage and the orchestrator."""

from __future__ import annotations


class NexusError(Exception):
    """Base class for every error raised by this package."""


# -- Provider errors ---------------------------------------------------------


class ProviderError(NexusError):
    """A vendor request failed before or while streaming."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class AuthError(ProviderError):
    """Missing or rejected credential. User-actionable, never retried."""


class RateLimitError(ProviderError):
    """The vendor is throttling requests."""


class UnavailableError(ProviderError):
    """Network failure or a 5xx response."""


class UnrecoverableError(ProviderError):
    """Non-2xx response with no clear retry semantic."""


# -- Stream / storage errors -------------------------------------------------


class DecodeError(NexusError):
    """A single SSE frame could not be parsed."""


class PersistenceError(NexusError):
    """The local store failed to read or write."""


class SyncError(NexusError):
    """The remote store failed. Recovered on the next debounce cycle."""


class ExportError(NexusError):
    """The export collaborator rejected or failed a document."""


# -- Orchestration errors ----------------------------------------------------


class ConfigurationError(NexusError):
    """The session is not ready to send (no provider or model selected)."""


class TurnInProgressError(NexusError):
    """A turn is already in flight for this conversation."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"A turn is already in progress for conversation {conversation_id}")
        self.conversation_id = conversation_id


class TurnCancelledError(NexusError):
    """The turn was cancelled before the assistant reply settled."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Turn cancelled for conversation {conversation_id}")
        self.conversation_id = conversation_id
