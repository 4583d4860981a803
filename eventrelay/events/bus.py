"""In-process event bus: publish -> deliver to every subscriber of the event type.

Each handler invocation runs under its own retry policy. A handler that still
fails after its retries is reported in the DispatchResult; publish never
raises because of a handler, and one handler never affects its siblings.
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from eventrelay.events.models import (
    DispatchResult,
    EventEnvelope,
    HandlerOutcome,
    standardize_event,
    utc_now_iso,
)
from eventrelay.retry import RetryExecutor, RetryOptions

__all__ = ["EventBus", "Handler", "Subscription"]

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    event_type: str
    handler_id: str
    handler: Handler
    once: bool = False


@dataclass
class _TypeMetrics:
    published: int = 0
    handler_successes: int = 0
    handler_failures: int = 0
    processing_ms_total: float = 0.0
    processed: int = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "handler_successes": self.handler_successes,
            "handler_failures": self.handler_failures,
            "average_processing_ms": (
                round(self.processing_ms_total / self.processed, 3) if self.processed else 0.0
            ),
        }


class EventBus:
    """Pub/sub dispatcher keyed by event type string."""

    def __init__(
        self,
        retry_executor: RetryExecutor | None = None,
        handler_retry: RetryOptions | None = None,
        serialize_per_type: bool = False,
        record_history: bool = False,
        history_limit: int = 1000,
    ) -> None:
        self._executor = retry_executor or RetryExecutor()
        self._handler_retry = handler_retry or RetryOptions(context="handler")
        self._serialize_per_type = serialize_per_type
        self._record_history = record_history
        self._history: deque[EventEnvelope] = deque(maxlen=max(history_limit, 1))
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._by_id: dict[str, Subscription] = {}
        self._type_locks: dict[str, asyncio.Lock] = {}
        self._metrics: dict[str, _TypeMetrics] = defaultdict(_TypeMetrics)
        self._event_types: dict[str, dict[str, Any]] = {}

    # --- Registry -----------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: Handler,
        handler_id: str | None = None,
        once: bool = False,
    ) -> str:
        """Register handler for event_type. Returns the handler id (generated if not given)."""
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        if not event_type:
            raise ValueError("event_type must be a non-empty string")
        handler_id = handler_id or f"{event_type}-handler-{uuid.uuid4().hex[:12]}"
        if handler_id in self._by_id:
            raise ValueError(f"Handler id already registered: {handler_id}")
        sub = Subscription(event_type=event_type, handler_id=handler_id, handler=handler, once=once)
        self._subscriptions[event_type].append(sub)
        self._by_id[handler_id] = sub
        logger.debug("Registered handler %s for event %s", handler_id, event_type)
        return handler_id

    def once(self, event_type: str, handler: Handler, handler_id: str | None = None) -> str:
        """Register a handler that is removed after its first delivery."""
        return self.subscribe(event_type, handler, handler_id=handler_id, once=True)

    def unsubscribe(self, handler_id: str) -> bool:
        """Remove one registration. Returns False (no error) if it is not registered."""
        sub = self._by_id.pop(handler_id, None)
        if sub is None:
            return False
        subs = self._subscriptions.get(sub.event_type, [])
        self._subscriptions[sub.event_type] = [s for s in subs if s.handler_id != handler_id]
        if not self._subscriptions[sub.event_type]:
            del self._subscriptions[sub.event_type]
        logger.debug("Removed handler %s for event %s", handler_id, sub.event_type)
        return True

    def unsubscribe_all(self, event_type: str) -> int:
        """Remove every registration for event_type. Returns how many were removed."""
        subs = self._subscriptions.pop(event_type, [])
        for sub in subs:
            self._by_id.pop(sub.handler_id, None)
        if subs:
            logger.debug("Removed %d handler(s) for event %s", len(subs), event_type)
        return len(subs)

    def is_subscribed(self, handler_id: str) -> bool:
        return handler_id in self._by_id

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscriptions.get(event_type, ()))

    def register_event_type(
        self,
        name: str,
        description: str = "",
        category: str = "uncategorized",
        schema: Mapping[str, Any] | None = None,
    ) -> "EventBus":
        """Record documentation metadata for an event type."""
        self._event_types[name] = {
            "name": name,
            "description": description,
            "category": category,
            "schema": dict(schema) if schema else None,
            "registered_at": utc_now_iso(),
        }
        logger.debug("Event type registered: %s", name)
        return self

    def get_event_types(self) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._event_types.items()}

    # --- Dispatch -----------------------------------------------------------

    async def publish(self, event: EventEnvelope | Mapping[str, Any]) -> DispatchResult:
        """Deliver event to all handlers of its type and wait for all of them to settle.

        Raises ValueError only for a malformed event; handler failures are in the result.
        """
        envelope = standardize_event(event)
        subscribers = list(self._subscriptions.get(envelope.type, ()))
        for sub in subscribers:
            if sub.once:
                self.unsubscribe(sub.handler_id)

        self._metrics[envelope.type].published += 1
        if self._record_history:
            self._history.appendleft(envelope)

        logger.info(
            "Publishing event %s (%s) correlation=%s retry=%s handlers=%d",
            envelope.id,
            envelope.type,
            envelope.correlation_id,
            envelope.is_retry,
            len(subscribers),
        )

        if self._serialize_per_type:
            async with self._lock_for(envelope.type):
                outcomes = await self._dispatch(envelope, subscribers)
        else:
            outcomes = await self._dispatch(envelope, subscribers)

        metrics = self._metrics[envelope.type]
        for outcome in outcomes:
            if outcome.success:
                metrics.handler_successes += 1
            else:
                metrics.handler_failures += 1
            metrics.processing_ms_total += outcome.duration_ms
            metrics.processed += 1

        return DispatchResult(event_id=envelope.id, event_type=envelope.type, outcomes=outcomes)

    def _lock_for(self, event_type: str) -> asyncio.Lock:
        lock = self._type_locks.get(event_type)
        if lock is None:
            lock = self._type_locks[event_type] = asyncio.Lock()
        return lock

    async def _dispatch(
        self, envelope: EventEnvelope, subscribers: list[Subscription]
    ) -> tuple[HandlerOutcome, ...]:
        if not subscribers:
            return ()
        # Tasks are created in registration order.
        outcomes = await asyncio.gather(*(self._invoke(sub, envelope) for sub in subscribers))
        return tuple(outcomes)

    async def _invoke(self, sub: Subscription, envelope: EventEnvelope) -> HandlerOutcome:
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            result = sub.handler(envelope)
            if inspect.isawaitable(result):
                await result

        started = time.perf_counter()
        try:
            await self._executor.run(
                attempt, self._handler_retry.with_context(f"handler:{sub.handler_id}")
            )
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.exception(
                "EventBus handler %s failed for event %s/%s after %d attempt(s): %s",
                sub.handler_id,
                envelope.type,
                envelope.id,
                attempts,
                e,
            )
            return HandlerOutcome(
                handler_id=sub.handler_id,
                success=False,
                attempts=attempts,
                duration_ms=duration_ms,
                error=e,
            )
        duration_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            "Handler %s completed for %s/%s in %.1fms",
            sub.handler_id,
            envelope.type,
            envelope.id,
            duration_ms,
        )
        return HandlerOutcome(
            handler_id=sub.handler_id, success=True, attempts=attempts, duration_ms=duration_ms
        )

    # --- Observability ------------------------------------------------------

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of per-type counters, totals and current handler counts."""
        by_type = {name: m.snapshot() for name, m in self._metrics.items()}
        totals = {
            "published": sum(m.published for m in self._metrics.values()),
            "handler_successes": sum(m.handler_successes for m in self._metrics.values()),
            "handler_failures": sum(m.handler_failures for m in self._metrics.values()),
        }
        return {
            "event_types": by_type,
            "totals": totals,
            "handler_counts": {name: len(subs) for name, subs in self._subscriptions.items()},
        }

    def reset_metrics(self) -> None:
        self._metrics.clear()
        logger.debug("Event bus metrics reset")

    def get_event_history(
        self,
        event_type: str | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[EventEnvelope]:
        """Recently published envelopes, newest first. Empty unless record_history is on."""
        if not self._record_history:
            return []
        history = list(self._history)
        if event_type:
            history = [e for e in history if e.type == event_type]
        if correlation_id:
            history = [e for e in history if e.correlation_id == correlation_id]
        if limit and limit > 0:
            history = history[:limit]
        return history

    def reset(self) -> None:
        """Clear history and metrics."""
        self._history.clear()
        self._metrics.clear()
        logger.debug("Event bus history and metrics reset")
