"""Aggregate and repository glue between domain entities and the EventBus."""

from eventrelay.domain.aggregate import AggregateRoot
from eventrelay.domain.repository import EventPublishingRepository

__all__ = ["AggregateRoot", "EventPublishingRepository"]
