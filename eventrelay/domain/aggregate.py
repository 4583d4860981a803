"""Aggregate root: entities accumulate domain events until their repository saves them."""

from typing import Any, ClassVar, Mapping

from eventrelay.events.models import EventEnvelope

__all__ = ["AggregateRoot"]


class AggregateRoot:
    """Mixin for entities that emit domain events.

    Events are envelopes built at ``add_domain_event`` time; the payload always
    carries ``entity_id`` and ``entity_type`` so handlers need no further lookup.
    """

    entity_type: ClassVar[str | None] = None

    @property
    def _pending_events(self) -> list[EventEnvelope]:
        events = self.__dict__.get("_domain_events")
        if events is None:
            events = self.__dict__["_domain_events"] = []
        return events

    def add_domain_event(
        self,
        type: str,
        data: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
        source_id: str | None = None,
    ) -> EventEnvelope:
        payload = dict(data or {})
        payload.setdefault("entity_id", getattr(self, "id", None))
        payload.setdefault("entity_type", self.entity_type or self.__class__.__name__)
        envelope = EventEnvelope.create(
            type, payload, correlation_id=correlation_id, source_id=source_id
        )
        self._pending_events.append(envelope)
        return envelope

    def get_domain_events(self) -> list[EventEnvelope]:
        return list(self._pending_events)

    def clear_domain_events(self) -> None:
        self._pending_events.clear()
