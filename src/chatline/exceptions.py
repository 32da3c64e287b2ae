"""Domain exception hierarchy for the chatline send core."""

from __future__ import annotations


class ChatlineError(RuntimeError):
    """Base class for all domain-level chat errors."""


class RequestValidationError(ChatlineError):
    """Raised when an outgoing request is rejected before any network call."""


class RateLimitedError(ChatlineError):
    """Raised when the rate limiter or the provider refuses the request."""


class SafetyRejectedError(ChatlineError):
    """Raised when the safety classifier blocks the latest user message."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UploadFailedError(ChatlineError):
    """Raised when local image blobs cannot be resolved to durable URLs."""


class ChatConnectionError(ChatlineError):
    """Raised when the backend cannot be reached (connectivity lost)."""


class StreamError(ChatlineError):
    """Raised when the provider signals a failure mid-stream."""


class RequestTooLargeError(ChatlineError):
    """Raised when the provider rejects the payload as too large."""


class TurnAbortedError(ChatlineError):
    """Raised inside a turn when its cancellation token was triggered."""


class PersistenceError(ChatlineError):
    """Raised when a conversation or message could not be saved durably."""


class ConfigValidationError(ChatlineError):
    """Raised when configuration cannot be validated safely."""
