"""Repository base whose save() flushes aggregate events to the EventBus exactly once.

Handler failures reported by the bus are forwarded to the dead-letter queue.
When the aggregate is missing, events are published directly; they are never
silently dropped.
"""

import logging
from typing import Any, Generic, Mapping, TypeVar

from eventrelay.domain.aggregate import AggregateRoot
from eventrelay.errors import ConfigurationError, EventPublishError
from eventrelay.events.bus import EventBus
from eventrelay.events.dead_letter import DeadLetterQueueService
from eventrelay.events.models import DispatchResult, EventEnvelope

__all__ = ["EventPublishingRepository"]

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=AggregateRoot)


class EventPublishingRepository(Generic[A]):
    """Subclasses implement ``_persist``; ``save`` persists then publishes."""

    def __init__(
        self,
        event_bus: EventBus | None,
        dead_letters: DeadLetterQueueService | None = None,
        strict: bool = False,
    ) -> None:
        if event_bus is None:
            raise ConfigurationError(f"{self.__class__.__name__} requires an EventBus")
        self._event_bus = event_bus
        self._dead_letters = dead_letters
        self._strict = strict

    async def _persist(self, aggregate: A) -> A:
        raise NotImplementedError

    async def save(self, aggregate: A) -> A:
        """Persist aggregate, then publish and clear its pending events."""
        stored = await self._persist(aggregate)
        await self.publish_domain_events(aggregate)
        return stored

    async def publish_domain_events(self, aggregate: AggregateRoot) -> list[DispatchResult]:
        """Publish the aggregate's pending events in order.

        Events are cleared before publishing so a later save cannot publish them twice.
        """
        events = aggregate.get_domain_events()
        aggregate.clear_domain_events()
        if events:
            logger.debug(
                "Publishing %d domain event(s): %s", len(events), [e.type for e in events]
            )
        results = [await self._publish(envelope) for envelope in events]
        self._raise_if_strict(results)
        return results

    async def publish_for(
        self,
        aggregate: AggregateRoot | None,
        event_type: str,
        data: Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> list[DispatchResult]:
        """Emit one event through the aggregate, or directly when the aggregate is missing."""
        if aggregate is None:
            logger.warning("No aggregate for %s; publishing directly", event_type)
            return [await self.publish_direct(event_type, data, correlation_id=correlation_id)]
        aggregate.add_domain_event(event_type, data, correlation_id=correlation_id)
        return await self.publish_domain_events(aggregate)

    async def publish_direct(
        self,
        event_type: str,
        data: Mapping[str, Any],
        correlation_id: str | None = None,
        source_id: str | None = None,
    ) -> DispatchResult:
        envelope = EventEnvelope.create(
            event_type, data, correlation_id=correlation_id, source_id=source_id
        )
        result = await self._publish(envelope)
        self._raise_if_strict([result])
        return result

    async def _publish(self, envelope: EventEnvelope) -> DispatchResult:
        result = await self._event_bus.publish(envelope)
        if result.ok:
            return result
        if self._dead_letters is not None:
            await self._dead_letters.record_dispatch_failures(result, envelope)
        else:
            logger.warning(
                "No dead-letter queue configured; %d handler failure(s) for %s/%s not stored",
                len(result.failures),
                envelope.type,
                envelope.id,
            )
        return result

    def _raise_if_strict(self, results: list[DispatchResult]) -> None:
        if not self._strict:
            return
        failures = [f for r in results for f in r.failures]
        if failures:
            raise EventPublishError(
                f"{len(failures)} handler(s) failed: "
                + ", ".join(f.handler_id for f in failures),
                failures,
            )
