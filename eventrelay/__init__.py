"""eventrelay: in-process domain event bus with retries and a persisted dead-letter queue."""

from eventrelay.errors import (
    ConfigurationError,
    DatabaseError,
    EventPublishError,
    EventRelayError,
    OperationFailedError,
)
from eventrelay.retry import RetryExecutor, RetryOptions, retrying

__all__ = [
    "ConfigurationError",
    "DatabaseError",
    "EventPublishError",
    "EventRelayError",
    "OperationFailedError",
    "RetryExecutor",
    "RetryOptions",
    "retrying",
]
