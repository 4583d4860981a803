"""Dead-letter queue service: bookkeeping for deliveries that exhausted their retries.

Storing, querying and recovering entries are best-effort: every method catches
its own storage errors, logs them and returns a safe value (None, False, [] or
0). The DLQ is the fallback path and must never fail the primary flow.
"""

import asyncio
import copy
import logging
import traceback
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar

from eventrelay.errors import ConfigurationError, DatabaseError, OperationFailedError
from eventrelay.events.models import (
    DeadLetterEntry,
    DeadLetterStatus,
    DispatchResult,
    EventEnvelope,
    OriginalFailure,
    standardize_event,
)
from eventrelay.events.store import DeadLetterStore
from eventrelay.retry import RetryExecutor, RetryOptions

if TYPE_CHECKING:
    from eventrelay.events.bus import EventBus

__all__ = ["DeadLetterQueueService", "RetryBatchResult"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STORAGE_RETRY = RetryOptions(
    context="dlq",
    max_retries=2,
    initial_delay_ms=100,
    max_delay_ms=1000,
    error_class=DatabaseError,
)


def _root_cause(error: BaseException) -> BaseException:
    """Underlying error of a retry-wrapped failure, or the error itself."""
    if isinstance(error, OperationFailedError) and error.__cause__ is not None:
        return error.__cause__
    return error


def _error_message(error: BaseException) -> str:
    cause = _root_cause(error)
    return str(cause) or cause.__class__.__name__


def _error_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


@dataclass
class RetryBatchResult:
    """Aggregate outcome of ``retry_events``."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "details": list(self.details),
        }


class DeadLetterQueueService:
    """Persists failed deliveries and re-publishes them on request."""

    def __init__(
        self,
        store: DeadLetterStore | None,
        retry_executor: RetryExecutor | None = None,
        storage_retry: RetryOptions | None = None,
    ) -> None:
        if store is None:
            raise ConfigurationError("DeadLetterQueueService requires a DeadLetterStore")
        self._store = store
        self._executor = retry_executor or RetryExecutor()
        self._storage_retry = replace(
            storage_retry or DEFAULT_STORAGE_RETRY, error_class=DatabaseError
        )

    async def _storage(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a storage call under the storage retry policy. Raises DatabaseError."""
        return await self._executor.run(operation, self._storage_retry.with_context(f"dlq.{name}"))

    async def close(self) -> None:
        await self._store.close()

    # --- Write --------------------------------------------------------------

    async def store_failed_event(
        self,
        event: EventEnvelope | Mapping[str, Any],
        handler_id: str,
        error: BaseException,
    ) -> DeadLetterEntry | None:
        """Persist a pending entry for a terminal handler failure. Returns None if storing fails."""
        event_id = getattr(event, "id", None)
        try:
            envelope = standardize_event(event)
            event_id = envelope.id
            entry = DeadLetterEntry(
                id=str(uuid.uuid4()),
                event_id=envelope.id,
                event_name=envelope.type,
                event_data=copy.deepcopy(envelope.data),
                handler_id=handler_id,
                error_message=_error_message(error),
                error_stack=_error_stack(error),
                retry_count=0,
                status=DeadLetterStatus.PENDING,
                correlation_id=envelope.correlation_id,
                source_id=envelope.source_id,
            )
            logger.info(
                "Storing failed event in DLQ: %s (event=%s handler=%s)",
                envelope.type,
                envelope.id,
                handler_id,
            )
            return await self._storage("insert", lambda: self._store.insert(entry))
        except Exception as e:
            logger.exception(
                "Failed to store event in DLQ (event=%s handler=%s, original error: %s): %s",
                event_id,
                handler_id,
                error,
                e,
            )
            return None

    async def record_dispatch_failures(
        self, result: DispatchResult, event: EventEnvelope
    ) -> list[DeadLetterEntry]:
        """Store one entry per failed handler of a dispatch.

        Failures of retried envelopes are not stored again: ``retry_event``
        records them on the existing entry.
        """
        if event.is_retry:
            return []
        entries: list[DeadLetterEntry] = []
        for outcome in result.failures:
            error = outcome.error or RuntimeError("handler failed")
            entry = await self.store_failed_event(event, outcome.handler_id, error)
            if entry is not None:
                entries.append(entry)
        return entries

    # --- Read ---------------------------------------------------------------

    async def get_failed_events(
        self,
        status: DeadLetterStatus | str | None = None,
        event_name: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[DeadLetterEntry]:
        """Entries matching the filters, newest first. Empty list on failure."""
        try:
            status_value = DeadLetterStatus(status).value if status else None
            return await self._storage(
                "query",
                lambda: self._store.query(
                    status=status_value, event_name=event_name, limit=limit, offset=offset
                ),
            )
        except Exception as e:
            logger.exception(
                "Failed to get failed events (status=%s event_name=%s): %s", status, event_name, e
            )
            return []

    async def get_entry(self, entry_id: str) -> DeadLetterEntry | None:
        try:
            return await self._storage("get", lambda: self._store.get(entry_id))
        except Exception as e:
            logger.exception("Failed to get DLQ entry %s: %s", entry_id, e)
            return None

    # --- Recovery -----------------------------------------------------------

    async def retry_event(self, entry_id: str, event_bus: "EventBus") -> bool:
        """Claim the entry and re-publish it. True when the original handler now succeeds."""
        try:
            entry = await self._storage("claim", lambda: self._store.claim_for_retry(entry_id))
        except Exception as e:
            logger.exception("Failed to claim DLQ entry %s for retry: %s", entry_id, e)
            return False

        if entry is None:
            existing = await self.get_entry(entry_id)
            if existing is None:
                logger.warning("DLQ entry not found for retry: %s", entry_id)
            else:
                logger.warning(
                    "DLQ entry %s cannot be retried from status %s",
                    entry_id,
                    existing.status.value,
                )
            return False

        envelope = EventEnvelope.create(
            entry.event_name,
            entry.event_data,
            correlation_id=entry.correlation_id,
            source_id=entry.source_id,
            event_id=entry.event_id,
            is_retry=True,
            original_failure=OriginalFailure(
                handler_id=entry.handler_id,
                error_message=entry.error_message,
                failed_at=entry.created_at,
            ),
        )
        logger.info(
            "Retrying failed event %s (entry=%s event=%s retry_count=%d)",
            entry.event_name,
            entry.id,
            entry.event_id,
            entry.retry_count,
        )

        try:
            result = await event_bus.publish(envelope)
        except asyncio.CancelledError:
            await self._release_claim(entry)
            raise
        except Exception as e:
            return await self._record_retry_failure(entry, e)

        outcome = result.outcome_for(entry.handler_id)
        if outcome is None:
            logger.warning(
                "Handler %s is not subscribed to %s; DLQ entry %s resolves without it",
                entry.handler_id,
                entry.event_name,
                entry.id,
            )
        elif not outcome.success:
            return await self._record_retry_failure(
                entry, outcome.error or RuntimeError("handler failed")
            )

        try:
            await self._storage("resolve", lambda: self._store.complete_retry(entry.id))
        except Exception as e:
            logger.exception(
                "Retry of DLQ entry %s delivered but could not be marked resolved: %s", entry.id, e
            )
            return False
        logger.info("DLQ entry %s resolved by retry", entry.id)
        return True

    async def _record_retry_failure(self, entry: DeadLetterEntry, error: BaseException) -> bool:
        logger.error(
            "Retry failed for event %s (entry=%s event=%s): %s",
            entry.event_name,
            entry.id,
            entry.event_id,
            error,
        )
        try:
            await self._storage(
                "fail",
                lambda: self._store.fail_retry(entry.id, _error_message(error), _error_stack(error)),
            )
        except Exception as e:
            logger.exception("Failed to record retry failure for DLQ entry %s: %s", entry.id, e)
        return False

    async def _release_claim(self, entry: DeadLetterEntry) -> None:
        logger.warning("Retry of DLQ entry %s cancelled; returning it to failed", entry.id)
        try:
            await self._store.release_claim(entry.id)
        except Exception as e:
            logger.exception("Failed to release claim on DLQ entry %s: %s", entry.id, e)

    async def recover_stale_retries(self, older_than_seconds: float | None = None) -> int:
        """Return entries stuck in 'retrying' to 'failed' so they can be retried again.

        Call once at startup without arguments (no retry can be in flight then),
        or periodically with older_than_seconds to catch abandoned claims.
        """
        claimed_before = None
        if older_than_seconds is not None:
            claimed_before = (
                datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
            ).isoformat()
        try:
            count = await self._storage(
                "recover", lambda: self._store.reset_retrying(claimed_before)
            )
        except Exception as e:
            logger.exception("Failed to recover stale DLQ retries: %s", e)
            return 0
        if count:
            logger.info("Recovered %d DLQ entries stuck in retrying", count)
        return count

    async def retry_events(
        self,
        event_bus: "EventBus",
        status: DeadLetterStatus | str | None = None,
        event_name: str | None = None,
    ) -> RetryBatchResult:
        """Retry every matching entry. Individual failures never stop the batch."""
        entries = await self.get_failed_events(status=status, event_name=event_name)
        results = RetryBatchResult(total=len(entries))
        for entry in entries:
            success = await self.retry_event(entry.id, event_bus)
            results.details.append(
                {"id": entry.id, "eventName": entry.event_name, "success": success}
            )
            if success:
                results.successful += 1
            else:
                results.failed += 1
        logger.info(
            "DLQ bulk retry: total=%d successful=%d failed=%d",
            results.total,
            results.successful,
            results.failed,
        )
        return results

    async def resolve_entry(self, entry_id: str) -> bool:
        """Mark an entry resolved without retrying (handled manually)."""
        try:
            resolved = await self._storage(
                "mark_resolved", lambda: self._store.mark_resolved(entry_id)
            )
        except Exception as e:
            logger.exception("Failed to resolve DLQ entry %s: %s", entry_id, e)
            return False
        if resolved:
            logger.info("Resolved DLQ entry: %s", entry_id)
        else:
            logger.warning("DLQ entry not found for resolve: %s", entry_id)
        return resolved

    async def delete_entry(self, entry_id: str) -> bool:
        try:
            deleted = await self._storage("delete", lambda: self._store.delete(entry_id))
        except Exception as e:
            logger.exception("Failed to delete DLQ entry %s: %s", entry_id, e)
            return False
        if deleted:
            logger.info("Deleted DLQ entry: %s", entry_id)
        else:
            logger.warning("DLQ entry not found for delete: %s", entry_id)
        return deleted

    async def purge_resolved(self, older_than_seconds: float) -> int:
        """Delete resolved entries older than the given age. For a retention job."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        try:
            count = await self._storage("purge", lambda: self._store.purge_resolved(cutoff))
        except Exception as e:
            logger.exception("Failed to purge resolved DLQ entries: %s", e)
            return 0
        if count:
            logger.info("Purged %d resolved DLQ entries created before %s", count, cutoff)
        return count
