"""FastAPI router for dead-letter queue administration and EventBus metrics.

The router is a thin shell over DeadLetterQueueService and EventBus; responses
follow ``{status, data?, message?}``.
"""

# No `from __future__ import annotations`: FastAPI resolves Depends()/Query()
# from runtime annotations.

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from eventrelay.admin.models import RetryFilter
from eventrelay.events.bus import EventBus
from eventrelay.events.dead_letter import DeadLetterQueueService
from eventrelay.events.models import DeadLetterStatus


def _success(data: Any = None, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "success"}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def create_admin_router(*, get_event_bus: Any, get_dead_letters: Any) -> APIRouter:
    """Create the admin router.

    Args:
        get_event_bus: Dependency callable returning the EventBus.
        get_dead_letters: Dependency callable returning the DeadLetterQueueService.
    """
    router = APIRouter(tags=["events-admin"])

    Bus = Annotated[EventBus, Depends(get_event_bus)]
    Dlq = Annotated[DeadLetterQueueService, Depends(get_dead_letters)]

    @router.get("/dlq", summary="List dead-letter entries")
    async def list_entries(
        dlq: Dlq,
        status: Annotated[DeadLetterStatus | None, Query()] = None,
        event_name: Annotated[str | None, Query(alias="eventName", max_length=200)] = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 50,
        offset: Annotated[int, Query(ge=0)] = 0,
    ) -> dict[str, Any]:
        entries = await dlq.get_failed_events(
            status=status, event_name=event_name, limit=limit, offset=offset
        )
        return _success([e.to_dict() for e in entries])

    @router.post("/dlq/retry", summary="Retry all entries matching a filter")
    async def retry_entries(
        dlq: Dlq,
        bus: Bus,
        retry_filter: Annotated[RetryFilter | None, Body()] = None,
    ) -> dict[str, Any]:
        retry_filter = retry_filter or RetryFilter()
        result = await dlq.retry_events(
            bus, status=retry_filter.status, event_name=retry_filter.event_name
        )
        return _success(result.to_dict())

    @router.get("/dlq/{entry_id}", summary="Get one dead-letter entry")
    async def get_entry(entry_id: str, dlq: Dlq) -> Any:
        entry = await dlq.get_entry(entry_id)
        if entry is None:
            return _error(404, f"DLQ entry not found or unavailable: {entry_id}")
        return _success(entry.to_dict())

    @router.post("/dlq/{entry_id}/retry", summary="Retry one dead-letter entry")
    async def retry_entry(entry_id: str, dlq: Dlq, bus: Bus) -> Any:
        if await dlq.get_entry(entry_id) is None:
            return _error(404, f"DLQ entry not found or unavailable: {entry_id}")
        if not await dlq.retry_event(entry_id, bus):
            return _error(409, f"Retry failed for DLQ entry {entry_id}")
        return _success({"id": entry_id, "success": True}, message="Event re-delivered")

    @router.post("/dlq/{entry_id}/resolve", summary="Mark an entry resolved without retrying")
    async def resolve_entry(entry_id: str, dlq: Dlq) -> Any:
        if not await dlq.resolve_entry(entry_id):
            return _error(404, f"DLQ entry not found or not resolvable: {entry_id}")
        return _success({"id": entry_id}, message="Entry resolved")

    @router.delete("/dlq/{entry_id}", summary="Delete a dead-letter entry")
    async def delete_entry(entry_id: str, dlq: Dlq) -> Any:
        if not await dlq.delete_entry(entry_id):
            return _error(404, f"DLQ entry not found or not deletable: {entry_id}")
        return _success({"id": entry_id}, message="Entry deleted")

    @router.get("/metrics/events", summary="EventBus counters")
    async def get_metrics(bus: Bus) -> dict[str, Any]:
        return _success(bus.get_metrics())

    @router.post("/metrics/events/reset", summary="Reset EventBus counters")
    async def reset_metrics(bus: Bus) -> dict[str, Any]:
        bus.reset_metrics()
        return _success(message="Event metrics reset")

    return router


__all__ = ["create_admin_router"]
