"""Tests for RetryExecutor: classification, backoff, attempt limits and error wrapping."""

import errno
import random

import pytest

from eventrelay.errors import ConfigurationError, DatabaseError, OperationFailedError
from eventrelay.retry import (
    RetryExecutor,
    RetryOptions,
    compute_backoff_delay,
    is_retryable_error,
    retrying,
)


class _Sleeps:
    """Records requested sleeps instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class TestIsRetryableError:
    """Transient error classification."""

    def test_builtin_network_signatures(self) -> None:
        assert is_retryable_error(RuntimeError("ECONNRESET"))
        assert is_retryable_error(RuntimeError("socket hang up"))
        assert is_retryable_error(RuntimeError("Database is LOCKED"))

    def test_connection_and_timeout_types(self) -> None:
        assert is_retryable_error(ConnectionResetError())
        assert is_retryable_error(TimeoutError())

    def test_error_code_attribute(self) -> None:
        assert is_retryable_error(_CodedError("fetch failed", code="ETIMEDOUT"))

    def test_os_error_errno_name(self) -> None:
        assert is_retryable_error(OSError(errno.EPIPE, "broken"))

    def test_configured_patterns_case_insensitive(self) -> None:
        err = RuntimeError("Upstream returned 503 Service Unavailable")
        assert not is_retryable_error(err)
        assert is_retryable_error(err, ["service unavailable"])
        assert is_retryable_error(_CodedError("x", code="PGRST301"), ["pgrst301"])

    def test_business_errors_not_retryable(self) -> None:
        assert not is_retryable_error(ValueError("ValidationError"))
        assert not is_retryable_error(KeyError("missing"))


class TestComputeBackoffDelay:
    """Exponential backoff with jitter."""

    def test_unjittered_delays_are_monotonic_and_capped(self) -> None:
        options = RetryOptions(max_retries=10, initial_delay_ms=500, max_delay_ms=5000)
        delays = [compute_backoff_delay(i, options, jitter=False) for i in range(11)]
        assert delays == sorted(delays)
        assert max(delays) == 5.0
        assert delays[:4] == [0.5, 1.0, 2.0, 4.0]

    def test_jitter_within_twenty_percent_and_cap(self) -> None:
        options = RetryOptions(initial_delay_ms=1000, max_delay_ms=5000)
        rng = random.Random(7)
        for attempt in range(8):
            base = compute_backoff_delay(attempt, options, jitter=False)
            jittered = compute_backoff_delay(attempt, options, rng=rng)
            assert base * 0.8 - 1e-9 <= jittered <= min(base * 1.2, 5.0) + 1e-9

    def test_large_attempt_does_not_overflow(self) -> None:
        options = RetryOptions(initial_delay_ms=500, max_delay_ms=5000)
        assert compute_backoff_delay(5000, options, jitter=False) == 5.0


class TestRetryOptions:
    def test_negative_max_retries_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            RetryOptions(max_retries=-1)

    def test_from_settings(self) -> None:
        options = RetryOptions.from_settings(
            {"max_retries": 5, "retryable_errors": ["busy"]}, "db"
        )
        assert options.context == "db"
        assert options.max_retries == 5
        assert options.retryable_errors == ("busy",)

    def test_single_string_pattern_is_not_split(self) -> None:
        options = RetryOptions.from_settings({"retryable_errors": "deadlock"}, "db")
        assert options.retryable_errors == ("deadlock",)
        assert not is_retryable_error(ValueError("ValidationError"), options.retryable_errors)
        assert RetryOptions(retryable_errors="busy").retryable_errors == ("busy",)  # type: ignore[arg-type]

    @pytest.mark.parametrize("value", [5, {"busy": True}, ["busy", 3]])
    def test_invalid_patterns_rejected(self, value) -> None:
        with pytest.raises(ConfigurationError):
            RetryOptions.from_settings({"retryable_errors": value}, "db")


class TestRetryExecutor:
    """run(): success path, retries, permanent failure."""

    @pytest.mark.asyncio
    async def test_success_returns_without_sleep(self) -> None:
        sleeps = _Sleeps()
        executor = RetryExecutor(sleep=sleeps)

        async def op() -> str:
            return "ok"

        assert await executor.run(op, RetryOptions(context="op")) == "ok"
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self) -> None:
        sleeps = _Sleeps()
        executor = RetryExecutor(sleep=sleeps)
        calls = 0

        async def op() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("connection refused")
            return calls

        assert await executor.run(op, RetryOptions(context="op", max_retries=3)) == 3
        assert len(sleeps.delays) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_wrap_last_error(self) -> None:
        sleeps = _Sleeps()
        executor = RetryExecutor(sleep=sleeps)
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError(f"ECONNRESET #{calls}")

        with pytest.raises(OperationFailedError) as exc_info:
            await executor.run(op, RetryOptions(context="fetch-user", max_retries=2))

        err = exc_info.value
        assert calls == 3
        assert len(sleeps.delays) == 2
        assert err.context == "fetch-user"
        assert err.attempts == 3
        assert err.retries == 2
        assert err.retryable is True
        assert "fetch-user" in str(err) and "2 retries" in str(err)
        assert str(err.__cause__) == "ECONNRESET #3"

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self) -> None:
        sleeps = _Sleeps()
        executor = RetryExecutor(sleep=sleeps)
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ValueError("ValidationError")

        with pytest.raises(OperationFailedError) as exc_info:
            await executor.run(op, RetryOptions(context="op", max_retries=5))
        assert calls == 1
        assert sleeps.delays == []
        assert exc_info.value.retryable is False
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self) -> None:
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise TimeoutError()

        with pytest.raises(OperationFailedError):
            await RetryExecutor(sleep=_Sleeps()).run(op, RetryOptions(max_retries=0))
        assert calls == 1

    @pytest.mark.asyncio
    async def test_custom_error_class(self) -> None:
        async def op() -> None:
            raise RuntimeError("disk full")

        with pytest.raises(DatabaseError):
            await RetryExecutor(sleep=_Sleeps()).run(
                op, RetryOptions(context="db.insert", error_class=DatabaseError)
            )


class TestRetryingDecorator:
    @pytest.mark.asyncio
    async def test_decorated_method_is_retried(self) -> None:
        executor = RetryExecutor(sleep=_Sleeps())

        class Client:
            def __init__(self) -> None:
                self.calls = 0

            @retrying(executor, RetryOptions(context="client.get", max_retries=2))
            async def get(self, key: str) -> str:
                self.calls += 1
                if self.calls == 1:
                    raise ConnectionError("connection reset")
                return key.upper()

        client = Client()
        assert await client.get("abc") == "ABC"
        assert client.calls == 2
        assert Client.get.__name__ == "get"
