"""Composition root: build the retry executor, EventBus and dead-letter queue; serve the admin API."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from eventrelay.admin import create_admin_router
from eventrelay.errors import ConfigurationError
from eventrelay.events import DeadLetterQueueService, DeadLetterStore, EventBus, EventTypes
from eventrelay.events import topics
from eventrelay.logging_config import setup_logging
from eventrelay.retry import RetryExecutor, RetryOptions
from eventrelay.settings import get_setting, load_settings

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def build_event_bus(settings: dict, retry_executor: RetryExecutor | None = None) -> EventBus:
    eb_cfg = settings.get("event_bus", {})
    bus = EventBus(
        retry_executor=retry_executor,
        handler_retry=RetryOptions.from_settings(eb_cfg.get("handler_retry", {}), "handler"),
        serialize_per_type=bool(eb_cfg.get("serialize_per_type", False)),
        record_history=bool(eb_cfg.get("record_history", False)),
        history_limit=int(eb_cfg.get("history_limit", 1000)),
    )
    bus.register_event_type(
        EventTypes.EVALUATION_COMPLETED,
        description="An evaluation of a challenge response finished",
        category="evaluation",
        schema=topics.EVALUATION_COMPLETED_PAYLOAD,
    )
    bus.register_event_type(
        EventTypes.CHALLENGE_COMPLETED,
        description="A user completed a challenge",
        category="challenge",
        schema=topics.CHALLENGE_COMPLETED_PAYLOAD,
    )
    bus.register_event_type(
        EventTypes.PROGRESS_UPDATED,
        description="User progress (levels, streaks, achievements) changed",
        category="gamification",
        schema=topics.PROGRESS_UPDATED_PAYLOAD,
    )
    return bus


def build_dead_letter_queue(
    settings: dict,
    project_root: Path = _PROJECT_ROOT,
    retry_executor: RetryExecutor | None = None,
) -> DeadLetterQueueService:
    dl_cfg = settings.get("dead_letter", {})
    db_path = dl_cfg.get("db_path")
    if not db_path:
        raise ConfigurationError("dead_letter.db_path is not configured")
    path = Path(db_path)
    if not path.is_absolute():
        path = project_root / path
    store = DeadLetterStore(path, busy_timeout=int(dl_cfg.get("busy_timeout", 5000)))
    return DeadLetterQueueService(
        store,
        retry_executor=retry_executor,
        storage_retry=RetryOptions.from_settings(dl_cfg.get("storage_retry", {}), "dlq"),
    )


def create_app(
    event_bus: EventBus,
    dead_letters: DeadLetterQueueService,
    stale_retry_seconds: float | None = None,
) -> FastAPI:
    """FastAPI app exposing the admin router over the given instances.

    On startup every DLQ entry left in 'retrying' by a previous process is
    returned to 'failed'. With stale_retry_seconds a watchdog repeats that
    for claims older than the threshold.
    """

    async def watchdog(interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await dead_letters.recover_stale_retries(older_than_seconds=interval)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await dead_letters.recover_stale_retries()
        watchdog_task = None
        if stale_retry_seconds:
            watchdog_task = asyncio.create_task(watchdog(stale_retry_seconds))
        logger.info("eventrelay admin API started")
        try:
            yield
        finally:
            if watchdog_task is not None:
                watchdog_task.cancel()
                with suppress(asyncio.CancelledError):
                    await watchdog_task
            await dead_letters.close()
            logger.info("eventrelay admin API stopped")

    async def get_event_bus() -> EventBus:
        return event_bus

    async def get_dead_letters() -> DeadLetterQueueService:
        return dead_letters

    app = FastAPI(title="eventrelay admin", lifespan=lifespan)
    app.include_router(
        create_admin_router(get_event_bus=get_event_bus, get_dead_letters=get_dead_letters)
    )
    return app


def build_app(settings: dict[str, Any] | None = None) -> FastAPI:
    """Build everything from settings. Handlers are subscribed by the embedding application."""
    settings = settings or load_settings()
    executor = RetryExecutor()
    return create_app(
        build_event_bus(settings, retry_executor=executor),
        build_dead_letter_queue(settings, retry_executor=executor),
        stale_retry_seconds=get_setting(settings, "dead_letter.stale_retry_seconds"),
    )


def main() -> None:
    """Bootstrap: env -> settings -> logging -> app -> serve."""
    load_dotenv()
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    app = build_app(settings)
    uvicorn.run(
        app,
        host=get_setting(settings, "admin.host", "127.0.0.1"),
        port=int(get_setting(settings, "admin.port", 8080)),
        log_config=None,
    )
