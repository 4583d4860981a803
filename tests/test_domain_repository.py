"""Tests for AggregateRoot and EventPublishingRepository."""

from dataclasses import dataclass
from pathlib import Path

import pytest

from eventrelay.domain import AggregateRoot, EventPublishingRepository
from eventrelay.errors import ConfigurationError, EventPublishError
from eventrelay.events import DeadLetterQueueService, DeadLetterStore, EventBus, EventEnvelope
from eventrelay.retry import RetryExecutor, RetryOptions


async def _no_sleep(_delay: float) -> None:
    return None


@dataclass
class Evaluation(AggregateRoot):
    entity_type = "evaluation"

    id: str
    score: float = 0.0

    def complete(self, score: float) -> None:
        self.score = score
        self.add_domain_event("EVALUATION_COMPLETED", {"score": score})


class InMemoryEvaluationRepository(EventPublishingRepository[Evaluation]):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rows: dict[str, Evaluation] = {}

    async def _persist(self, aggregate: Evaluation) -> Evaluation:
        self.rows[aggregate.id] = aggregate
        return aggregate


@pytest.fixture
def executor() -> RetryExecutor:
    return RetryExecutor(sleep=_no_sleep)


@pytest.fixture
def event_bus(executor: RetryExecutor) -> EventBus:
    return EventBus(
        retry_executor=executor,
        handler_retry=RetryOptions(context="handler", max_retries=2),
    )


@pytest.fixture
async def dead_letters(tmp_path: Path, executor: RetryExecutor) -> DeadLetterQueueService:
    service = DeadLetterQueueService(DeadLetterStore(tmp_path / "dlq.db"), retry_executor=executor)
    yield service
    await service.close()


class TestAggregateRoot:
    def test_add_domain_event_fills_entity_fields(self) -> None:
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.8)

        events = evaluation.get_domain_events()
        assert len(events) == 1
        assert events[0].type == "EVALUATION_COMPLETED"
        assert events[0].data == {"score": 0.8, "entity_id": "ev-1", "entity_type": "evaluation"}

    def test_get_returns_copy_and_clear_empties(self) -> None:
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.5)
        evaluation.get_domain_events().clear()
        assert len(evaluation.get_domain_events()) == 1

        evaluation.clear_domain_events()
        assert evaluation.get_domain_events() == []

    def test_explicit_entity_fields_kept(self) -> None:
        evaluation = Evaluation(id="ev-1")
        event = evaluation.add_domain_event("X", {"entity_id": "other", "entity_type": "custom"})
        assert event.data["entity_id"] == "other"
        assert event.data["entity_type"] == "custom"


class TestEventPublishingRepository:
    def test_missing_bus_fails_at_construction(self) -> None:
        with pytest.raises(ConfigurationError):
            InMemoryEvaluationRepository(None)

    @pytest.mark.asyncio
    async def test_save_publishes_once(self, event_bus: EventBus) -> None:
        received: list[EventEnvelope] = []

        async def handler(event: EventEnvelope) -> None:
            received.append(event)

        event_bus.subscribe("EVALUATION_COMPLETED", handler)
        repo = InMemoryEvaluationRepository(event_bus)
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.9)

        await repo.save(evaluation)
        await repo.save(evaluation)

        assert repo.rows["ev-1"] is evaluation
        assert len(received) == 1
        assert received[0].data["entity_id"] == "ev-1"
        assert evaluation.get_domain_events() == []

    @pytest.mark.asyncio
    async def test_events_published_in_order(self, event_bus: EventBus) -> None:
        received: list[str] = []

        async def handler(event: EventEnvelope) -> None:
            received.append(event.data["step"])

        event_bus.subscribe("STEP", handler)
        repo = InMemoryEvaluationRepository(event_bus)
        evaluation = Evaluation(id="ev-1")
        for step in ("a", "b", "c"):
            evaluation.add_domain_event("STEP", {"step": step})

        await repo.save(evaluation)
        assert received == ["a", "b", "c"]
        assert await repo.publish_domain_events(evaluation) == []

    @pytest.mark.asyncio
    async def test_handler_failure_goes_to_dead_letter_queue(
        self, event_bus: EventBus, dead_letters: DeadLetterQueueService
    ) -> None:
        calls = 0

        async def handler(event: EventEnvelope) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("ECONNRESET")

        event_bus.subscribe("EVALUATION_COMPLETED", handler, handler_id="progress")
        repo = InMemoryEvaluationRepository(event_bus, dead_letters)
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.3)

        await repo.save(evaluation)

        assert calls == 3
        entries = await dead_letters.get_failed_events()
        assert len(entries) == 1
        assert entries[0].handler_id == "progress"
        assert entries[0].retry_count == 0
        assert entries[0].event_data["entity_id"] == "ev-1"

    @pytest.mark.asyncio
    async def test_failure_without_dead_letter_queue_does_not_raise(
        self, event_bus: EventBus
    ) -> None:
        async def handler(event: EventEnvelope) -> None:
            raise ValueError("bad")

        event_bus.subscribe("EVALUATION_COMPLETED", handler)
        repo = InMemoryEvaluationRepository(event_bus)
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.1)

        assert await repo.save(evaluation) is evaluation

    @pytest.mark.asyncio
    async def test_strict_mode_raises_publish_error(self, event_bus: EventBus) -> None:
        async def handler(event: EventEnvelope) -> None:
            raise ValueError("bad")

        event_bus.subscribe("EVALUATION_COMPLETED", handler, handler_id="scoring")
        repo = InMemoryEvaluationRepository(event_bus, strict=True)
        evaluation = Evaluation(id="ev-1")
        evaluation.complete(0.1)

        with pytest.raises(EventPublishError) as exc_info:
            await repo.save(evaluation)
        assert [f.handler_id for f in exc_info.value.failures] == ["scoring"]
        assert evaluation.get_domain_events() == []

    @pytest.mark.asyncio
    async def test_publish_for_missing_aggregate_publishes_directly(
        self, event_bus: EventBus
    ) -> None:
        received: list[EventEnvelope] = []

        async def handler(event: EventEnvelope) -> None:
            received.append(event)

        event_bus.subscribe("PROGRESS_UPDATED", handler)
        repo = InMemoryEvaluationRepository(event_bus)

        results = await repo.publish_for(None, "PROGRESS_UPDATED", {"level": 2}, correlation_id="c-1")

        assert len(results) == 1 and results[0].ok
        assert received[0].data == {"level": 2}
        assert received[0].correlation_id == "c-1"

    @pytest.mark.asyncio
    async def test_publish_for_aggregate(self, event_bus: EventBus) -> None:
        received: list[EventEnvelope] = []

        async def handler(event: EventEnvelope) -> None:
            received.append(event)

        event_bus.subscribe("PROGRESS_UPDATED", handler)
        repo = InMemoryEvaluationRepository(event_bus)
        evaluation = Evaluation(id="ev-7")

        await repo.publish_for(evaluation, "PROGRESS_UPDATED", {"level": 3})

        assert received[0].data["entity_id"] == "ev-7"
        assert evaluation.get_domain_events() == []
