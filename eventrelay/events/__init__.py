"""Event delivery: in-process bus, dead-letter queue and their models."""

from eventrelay.events.bus import EventBus
from eventrelay.events.dead_letter import DeadLetterQueueService, RetryBatchResult
from eventrelay.events.models import (
    DeadLetterEntry,
    DeadLetterStatus,
    DispatchResult,
    EventEnvelope,
    HandlerOutcome,
)
from eventrelay.events.store import DeadLetterStore
from eventrelay.events.topics import EventTypes

__all__ = [
    "DeadLetterEntry",
    "DeadLetterQueueService",
    "DeadLetterStatus",
    "DeadLetterStore",
    "DispatchResult",
    "EventBus",
    "EventEnvelope",
    "EventTypes",
    "HandlerOutcome",
    "RetryBatchResult",
]
