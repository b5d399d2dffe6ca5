"""Shared fixtures: a store on a temp SQLite file, a registry, and a controllable clock."""

import time
from pathlib import Path

import pytest

from eventqueue.events import (
    Emitter,
    EventStore,
    HandlerRegistry,
    RealtimeBroadcaster,
)


class FakeClock:
    """Callable clock returning a settable epoch time."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "events.db"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broadcaster() -> RealtimeBroadcaster:
    return RealtimeBroadcaster()


@pytest.fixture
async def store(db_path: Path, broadcaster: RealtimeBroadcaster) -> EventStore:
    s = EventStore(db_path, broadcaster=broadcaster)
    await s.ensure_conn()
    yield s
    await s.close()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def emitter(store: EventStore, registry: HandlerRegistry, clock: FakeClock) -> Emitter:
    return Emitter(store, registry, clock=clock)
