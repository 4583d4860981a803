"""Exception types shared by the retry executor, event bus and dead-letter queue."""

__all__ = [
    "ConfigurationError",
    "DatabaseError",
    "EventPublishError",
    "EventRelayError",
    "OperationFailedError",
]


class EventRelayError(Exception):
    """Base class for eventrelay errors."""


class ConfigurationError(EventRelayError):
    """A required dependency or setting is missing. Raised at construction, not at call time."""


class OperationFailedError(EventRelayError):
    """An operation failed permanently: not retryable, or retries exhausted.

    The last underlying error is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        context: str,
        attempts: int,
        retryable: bool,
    ) -> None:
        super().__init__(message)
        self.context = context
        self.attempts = attempts
        self.retryable = retryable

    @property
    def retries(self) -> int:
        """Number of retries performed after the first attempt."""
        return max(self.attempts - 1, 0)


class DatabaseError(OperationFailedError):
    """Storage operation failed permanently."""


class EventPublishError(EventRelayError):
    """One or more handlers failed terminally while publishing domain events."""

    def __init__(self, message: str, failures: list) -> None:
        super().__init__(message)
        self.failures = failures
