"""Retry executor: exponential backoff with jitter for async operations.

Used by the EventBus around every handler invocation and by the dead-letter
queue around its storage calls. Permanent failure always surfaces as one typed
error (``OperationFailedError`` or the configured subclass) with the last
underlying error chained as ``__cause__``.
"""

import asyncio
import errno
import functools
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from eventrelay.errors import ConfigurationError, OperationFailedError

__all__ = [
    "JITTER_RATIO",
    "NETWORK_ERROR_SIGNATURES",
    "RetryExecutor",
    "RetryOptions",
    "compute_backoff_delay",
    "is_retryable_error",
    "retrying",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.2

# Lower-case substrings matched against an error's code and message.
NETWORK_ERROR_SIGNATURES: tuple[str, ...] = (
    "econnreset",
    "econnrefused",
    "econnaborted",
    "etimedout",
    "epipe",
    "enotfound",
    "eai_again",
    "connection",
    "timeout",
    "timed out",
    "network",
    "socket hang up",
    "temporarily unavailable",
    "too many connections",
    "database is locked",
    "database is busy",
    "deadlock",
    "rate limit",
    "server closed",
)

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def _pattern_tuple(value: Any, context: str) -> tuple[str, ...]:
    """Normalize retryable_errors: a single string is one pattern, not its characters."""
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigurationError(
            f"retryable_errors must be a list of strings, got {type(value).__name__} ({context})"
        )
    patterns = tuple(value)
    if not all(isinstance(p, str) for p in patterns):
        raise ConfigurationError(f"retryable_errors entries must be strings ({context})")
    return patterns


@dataclass(frozen=True)
class RetryOptions:
    """Retry policy for one kind of operation. Delays are in milliseconds."""

    context: str = "operation"
    max_retries: int = 3
    initial_delay_ms: float = 500
    max_delay_ms: float = 5000
    backoff_factor: float = 2.0
    retryable_errors: tuple[str, ...] = ()
    error_class: type[OperationFailedError] = OperationFailedError

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(
                f"max_retries must be >= 0, got {self.max_retries} ({self.context})"
            )
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError(f"retry delays must be >= 0 ({self.context})")
        if self.backoff_factor < 1:
            raise ConfigurationError(
                f"backoff_factor must be >= 1, got {self.backoff_factor} ({self.context})"
            )
        object.__setattr__(
            self, "retryable_errors", _pattern_tuple(self.retryable_errors, self.context)
        )

    def with_context(self, context: str) -> "RetryOptions":
        """Copy of these options labelled for another operation."""
        return replace(self, context=context)

    @classmethod
    def from_settings(cls, cfg: dict[str, Any], context: str, **overrides: Any) -> "RetryOptions":
        """Build options from a settings section (e.g. ``event_bus.handler_retry``)."""
        values: dict[str, Any] = {
            "context": context,
            "max_retries": int(cfg.get("max_retries", 3)),
            "initial_delay_ms": float(cfg.get("initial_delay_ms", 500)),
            "max_delay_ms": float(cfg.get("max_delay_ms", 5000)),
            "backoff_factor": float(cfg.get("backoff_factor", 2.0)),
            "retryable_errors": _pattern_tuple(cfg.get("retryable_errors") or (), context),
        }
        values.update(overrides)
        return cls(**values)


def _error_code(exc: BaseException) -> str | None:
    """Symbolic code of an error: a ``code`` attribute, or the errno name for OSError."""
    code = getattr(exc, "code", None)
    if code is not None:
        return str(code)
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno)
    return None


def is_retryable_error(exc: BaseException, patterns: Iterable[str] = ()) -> bool:
    """True when the error looks transient.

    Matches the configured patterns and the built-in network signatures as
    case-insensitive substrings of the error code and message. Connection and
    timeout exception types are always transient.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    code = _error_code(exc)
    haystack = f"{code or ''} {exc}".lower()
    for pattern in (*patterns, *NETWORK_ERROR_SIGNATURES):
        if pattern and pattern.lower() in haystack:
            return True
    return False


def compute_backoff_delay(
    attempt: int,
    options: RetryOptions,
    *,
    jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before retry number ``attempt + 1``.

    ``min(max_delay, initial_delay * factor ** attempt)``, adjusted by a uniform
    +/-20% jitter and never above ``max_delay``.
    """
    try:
        delay_ms = options.initial_delay_ms * options.backoff_factor ** max(attempt, 0)
    except OverflowError:
        delay_ms = options.max_delay_ms
    delay_ms = min(options.max_delay_ms, delay_ms)
    if jitter:
        source = rng or random
        delay_ms *= 1.0 + source.uniform(-JITTER_RATIO, JITTER_RATIO)
        delay_ms = min(options.max_delay_ms, max(0.0, delay_ms))
    return delay_ms / 1000.0


class RetryExecutor:
    """Runs async operations under a RetryOptions policy."""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng

    async def run(self, operation: Callable[[], Awaitable[T]], options: RetryOptions) -> T:
        """Await ``operation()``; retry transient failures, wrap permanent ones.

        At most ``options.max_retries + 1`` attempts are made.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                retryable = is_retryable_error(e, options.retryable_errors)
                if not retryable or attempt >= options.max_retries:
                    logger.debug(
                        "%s failed permanently after %d attempt(s) (retryable=%s): %s",
                        options.context,
                        attempt + 1,
                        retryable,
                        e,
                    )
                    raise options.error_class(
                        f"{options.context} failed after {attempt} retries: {e}",
                        context=options.context,
                        attempts=attempt + 1,
                        retryable=retryable,
                    ) from e
                delay = compute_backoff_delay(attempt, options, rng=self._rng)
                logger.warning(
                    "%s failed transiently (attempt %d/%d), retrying in %.3fs: %s",
                    options.context,
                    attempt + 1,
                    options.max_retries + 1,
                    delay,
                    e,
                )
                await self._sleep(delay)
                attempt += 1

    def wrap(
        self, func: Callable[..., Awaitable[T]], options: RetryOptions
    ) -> Callable[..., Awaitable[T]]:
        """Return ``func`` decorated so that every call runs through this executor."""

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.run(lambda: func(*args, **kwargs), options)

        return wrapper


def retrying(
    executor: RetryExecutor, options: RetryOptions
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of ``RetryExecutor.wrap`` for explicitly retried client methods."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        return executor.wrap(func, options)

    return decorator
