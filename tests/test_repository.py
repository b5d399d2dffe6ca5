"""Tests for EventRepository: lookups, filtered listing, statistics, manual retry and cancel."""

from unittest.mock import AsyncMock

import pytest

from eventqueue.events import (
    Dispatcher,
    Emitter,
    EventFilters,
    EventRepository,
    EventStatus,
    EventStore,
    HandlerRegistry,
)


@pytest.fixture
def repo(store: EventStore, clock) -> EventRepository:
    return EventRepository(store, clock=clock)


async def _failed_event(store: EventStore, registry: HandlerRegistry, emitter: Emitter, clock):
    registry.register("job:broken", AsyncMock(side_effect=RuntimeError("broken")))
    event = await emitter.emit("job:broken", {}, {"max_retries": 0})
    await Dispatcher(store, registry, clock=clock).tick()
    return event


class TestGetAndList:
    @pytest.mark.asyncio
    async def test_get_unknown_id(self, repo: EventRepository) -> None:
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_decoded_event(self, repo: EventRepository, emitter: Emitter) -> None:
        event = await emitter.emit("e.one", {"nested": {"a": [1, 2]}}, {"user_id": "u-7"})
        row = await repo.get(event.id)
        assert row == event
        assert row.payload == {"nested": {"a": [1, 2]}}

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(
        self, repo: EventRepository, emitter: Emitter, clock
    ) -> None:
        first = await emitter.emit("e.a", {}, {"user_id": "alice"})
        clock.advance(10)
        second = await emitter.emit("e.b", {}, {"user_id": "bob"})
        clock.advance(10)
        third = await emitter.emit("e.a", {}, {"user_id": "bob"})

        assert [e.id for e in await repo.list_events()] == [third.id, second.id, first.id]
        by_type = await repo.list_events(EventFilters(event_type="e.a"))
        assert [e.id for e in by_type] == [third.id, first.id]
        by_user = await repo.list_events(EventFilters(user_id="bob"))
        assert [e.id for e in by_user] == [third.id, second.id]
        window = await repo.list_events(
            EventFilters(created_from=first.created_at + 5, created_to=second.created_at)
        )
        assert [e.id for e in window] == [second.id]

    @pytest.mark.asyncio
    async def test_list_limit_offset(self, repo: EventRepository, emitter: Emitter, clock) -> None:
        ids = []
        for i in range(5):
            ids.append((await emitter.emit("e.page", {"i": i})).id)
            clock.advance(1)
        newest_first = list(reversed(ids))

        page = await repo.list_events(EventFilters(limit=2, offset=1))
        assert [e.id for e in page] == newest_first[1:3]

    @pytest.mark.asyncio
    async def test_list_by_status(
        self, repo: EventRepository, store: EventStore, registry: HandlerRegistry, emitter: Emitter, clock
    ) -> None:
        failed = await _failed_event(store, registry, emitter, clock)
        pending = await emitter.emit("e.waiting", {}, {"scheduled_at": clock() + 60})

        assert [e.id for e in await repo.list_events(EventFilters(status="failed"))] == [failed.id]
        assert [e.id for e in await repo.list_events(EventFilters(status="pending"))] == [pending.id]
        with pytest.raises(ValueError):
            await repo.list_events(EventFilters(status="sleeping"))


class TestStatistics:
    @pytest.mark.asyncio
    async def test_counts(
        self, repo: EventRepository, store: EventStore, registry: HandlerRegistry, emitter: Emitter, clock
    ) -> None:
        await _failed_event(store, registry, emitter, clock)
        registry.register("e.ok", AsyncMock(return_value={}))
        await emitter.emit("e.ok", {})
        await Dispatcher(store, registry, clock=clock).tick()
        await emitter.emit("e.later", {}, {"scheduled_at": clock() + 3600})
        old = await Emitter(store, clock=lambda: clock() - 2 * 86400).emit("e.later", {})
        assert old.status == EventStatus.PENDING

        stats = await repo.statistics()
        assert stats.total == 4
        assert stats.pending == 2
        assert stats.processing == 0
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.cancelled == 0
        assert stats.last_24h == 3
        assert stats.by_type == {"job:broken": 1, "e.ok": 1, "e.later": 2}

    @pytest.mark.asyncio
    async def test_empty_store(self, repo: EventRepository) -> None:
        stats = await repo.statistics()
        assert stats.total == 0
        assert stats.by_type == {}


class TestRetryAndCancel:
    @pytest.mark.asyncio
    async def test_retry_failed_event(
        self, repo: EventRepository, store: EventStore, registry: HandlerRegistry, emitter: Emitter, clock
    ) -> None:
        event = await _failed_event(store, registry, emitter, clock)
        clock.advance(30)

        row = await repo.retry(event.id)

        assert row.status == EventStatus.PENDING
        assert row.retry_count == 0
        assert row.error_message is None
        assert row.progress == 0
        assert row.scheduled_at == clock()
        assert row.completed_at is None

    @pytest.mark.asyncio
    async def test_retry_only_applies_to_failed(self, repo: EventRepository, emitter: Emitter) -> None:
        event = await emitter.emit("e.pending", {})
        assert await repo.retry(event.id) is None
        assert await repo.retry("missing") is None
        assert (await repo.get(event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_pending_event_is_never_dispatched(
        self, repo: EventRepository, store: EventStore, registry: HandlerRegistry, emitter: Emitter, clock
    ) -> None:
        handler = AsyncMock(return_value={})
        registry.register("e.cancel", handler)
        event = await emitter.emit("e.cancel", {})

        assert await repo.cancel(event.id) is True
        assert (await repo.get(event.id)).status == EventStatus.CANCELLED
        assert (await Dispatcher(store, registry, clock=clock).tick()).claimed == 0
        handler.assert_not_awaited()
        assert await repo.cancel(event.id) is False

    @pytest.mark.asyncio
    async def test_cancel_claimed_event_rejected(
        self, repo: EventRepository, store: EventStore, emitter: Emitter, clock
    ) -> None:
        event = await emitter.emit("e.busy", {})
        await store.claim_due(clock(), 10, "tok", 300)
        assert await repo.cancel(event.id) is False
        assert (await repo.get(event.id)).status == EventStatus.PROCESSING
