"""Event models: envelope passed through the bus, dispatch results, dead-letter entries."""

import copy
import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

__all__ = [
    "DeadLetterEntry",
    "DeadLetterStatus",
    "DispatchResult",
    "EventEnvelope",
    "EventMetadata",
    "HandlerOutcome",
    "OriginalFailure",
    "standardize_event",
    "utc_now_iso",
]


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class EventMetadata:
    timestamp: str
    correlation_id: str
    source_id: str | None = None


@dataclass(frozen=True)
class OriginalFailure:
    """Failure that sent an event to the dead-letter queue. Set on retried envelopes only."""

    handler_id: str
    error_message: str
    failed_at: str


@dataclass(frozen=True)
class EventEnvelope:
    """Immutable event passed to handlers."""

    id: str
    type: str
    data: dict
    metadata: EventMetadata
    is_retry: bool = False
    original_failure: OriginalFailure | None = None

    @classmethod
    def create(
        cls,
        type: str,
        data: Mapping[str, Any],
        correlation_id: str | None = None,
        source_id: str | None = None,
        *,
        event_id: str | None = None,
        is_retry: bool = False,
        original_failure: OriginalFailure | None = None,
    ) -> "EventEnvelope":
        """Build an envelope with a fresh id and timestamp. The payload is deep-copied."""
        if not type or not isinstance(type, str):
            raise ValueError("Event type must be a non-empty string")
        if not isinstance(data, Mapping):
            raise ValueError(f"Event data must be a mapping, got {data.__class__.__name__}")
        return cls(
            id=event_id or str(uuid.uuid4()),
            type=type,
            data=copy.deepcopy(dict(data)),
            metadata=EventMetadata(
                timestamp=utc_now_iso(),
                correlation_id=correlation_id or str(uuid.uuid4()),
                source_id=source_id,
            ),
            is_retry=is_retry,
            original_failure=original_failure,
        )

    @property
    def correlation_id(self) -> str:
        return self.metadata.correlation_id

    @property
    def source_id(self) -> str | None:
        return self.metadata.source_id

    def to_dict(self) -> dict[str, Any]:
        """JSON view (camelCase keys)."""
        result: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "data": copy.deepcopy(self.data),
            "metadata": {
                "timestamp": self.metadata.timestamp,
                "correlationId": self.metadata.correlation_id,
                "sourceId": self.metadata.source_id,
            },
            "isRetry": self.is_retry,
        }
        if self.original_failure is not None:
            result["originalFailure"] = {
                "handlerId": self.original_failure.handler_id,
                "errorMessage": self.original_failure.error_message,
                "failedAt": self.original_failure.failed_at,
            }
        return result

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EventEnvelope":
        """Parse the JSON view produced by ``to_dict``. Missing id/timestamp are generated."""
        meta = raw.get("metadata") or {}
        failure = raw.get("originalFailure")
        envelope = cls.create(
            raw.get("type") or raw.get("name") or "",
            raw.get("data") or {},
            correlation_id=meta.get("correlationId") or raw.get("correlationId"),
            source_id=meta.get("sourceId") or raw.get("sourceId"),
            event_id=raw.get("id"),
            is_retry=bool(raw.get("isRetry", False)),
            original_failure=(
                OriginalFailure(
                    handler_id=failure.get("handlerId", ""),
                    error_message=failure.get("errorMessage", ""),
                    failed_at=failure.get("failedAt", ""),
                )
                if failure
                else None
            ),
        )
        timestamp = meta.get("timestamp") or raw.get("timestamp")
        if timestamp:
            envelope = replace(envelope, metadata=replace(envelope.metadata, timestamp=timestamp))
        return envelope


def standardize_event(event: "EventEnvelope | Mapping[str, Any]") -> EventEnvelope:
    """Accept an envelope or a mapping (current ``type`` shape or legacy ``name`` shape)."""
    if isinstance(event, EventEnvelope):
        return event
    if isinstance(event, Mapping):
        return EventEnvelope.from_dict(event)
    raise ValueError(f"Cannot publish {event.__class__.__name__} as an event")


@dataclass(frozen=True)
class HandlerOutcome:
    """Result of delivering one event to one handler (after its retries)."""

    handler_id: str
    success: bool
    attempts: int = 1
    duration_ms: float = 0.0
    error: BaseException | None = None

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error.__cause__ or self.error)


@dataclass(frozen=True)
class DispatchResult:
    """Per-handler outcomes of one ``EventBus.publish`` call."""

    event_id: str
    event_type: str
    outcomes: tuple[HandlerOutcome, ...] = ()

    @property
    def ok(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def succeeded(self) -> list[HandlerOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failures(self) -> list[HandlerOutcome]:
        return [o for o in self.outcomes if not o.success]

    def outcome_for(self, handler_id: str) -> HandlerOutcome | None:
        for outcome in self.outcomes:
            if outcome.handler_id == handler_id:
                return outcome
        return None


class DeadLetterStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class DeadLetterEntry:
    """Row of the event_dead_letter_queue table."""

    id: str
    event_id: str
    event_name: str
    event_data: dict
    handler_id: str
    error_message: str
    error_stack: str | None
    retry_count: int = 0
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    correlation_id: str | None = None
    source_id: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    last_retry_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON view used by the admin API."""
        return {
            "id": self.id,
            "eventId": self.event_id,
            "eventName": self.event_name,
            "eventData": self.event_data,
            "handlerId": self.handler_id,
            "errorMessage": self.error_message,
            "errorStack": self.error_stack,
            "retryCount": self.retry_count,
            "status": self.status.value,
            "correlationId": self.correlation_id,
            "sourceId": self.source_id,
            "createdAt": self.created_at,
            "lastRetryAt": self.last_retry_at,
        }
