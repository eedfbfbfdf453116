"""Exception hierarchy for the subscriber."""
from typing import Any


class SubscriberError(Exception):
    """Base exception for subscriber errors."""
    pass


class ConfigurationError(SubscriberError):
    """Raised when subscription parameters are invalid.

    Always raised before any network activity takes place.
    """
    pass


class TransportError(SubscriberError):
    """Raised when the stream fails to open or breaks mid-stream."""

    def __init__(self, message: str, code: str | None = None, result: Any = None):
        """
        Initialize transport error.

        Args:
            message: Human-readable description
            code: Transport status name (e.g. "UNAVAILABLE", "CANCELLED")
            result: SubscriptionResult of the failed run, when raised by the subscriber
        """
        super().__init__(message)
        self.code = code
        self.result = result

    @property
    def cancelled(self) -> bool:
        """Whether the transport reported a caller-side cancellation."""
        return self.code == "CANCELLED"


class DecodeError(SubscriberError):
    """Raised when a payload cannot be decoded against its schema."""

    def __init__(self, message: str, payload: bytes = b""):
        super().__init__(message)
        self.payload = payload

    @property
    def detail(self) -> str | None:
        """Text of the underlying exception, if any."""
        cause = self.__cause__
        return str(cause) if cause is not None else None


class HandlerError(SubscriberError):
    """Raised when the caller's per-event handler fails."""
    pass


class CheckpointError(SubscriberError):
    """Raised when a checkpoint store cannot save or load a replay token."""
    pass
