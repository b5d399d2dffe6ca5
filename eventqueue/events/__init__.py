"""Event queue engine: durable events, atomic-claim dispatcher, retry and realtime fan-out."""

from eventqueue.events.context import JobContext
from eventqueue.events.dispatcher import Dispatcher
from eventqueue.events.emitter import Emitter
from eventqueue.events.errors import (
    EventQueueError,
    HandlerExecutionError,
    NoHandlerError,
    PersistenceError,
    ValidationError,
)
from eventqueue.events.models import (
    EmitOptions,
    Event,
    EventFilters,
    EventStatistics,
    EventStatus,
    TickSummary,
)
from eventqueue.events.realtime import RealtimeBroadcaster
from eventqueue.events.registry import HandlerRegistry
from eventqueue.events.repository import EventRepository
from eventqueue.events.store import EventStore

__all__ = [
    "Dispatcher",
    "EmitOptions",
    "Emitter",
    "Event",
    "EventFilters",
    "EventQueueError",
    "EventRepository",
    "EventStatistics",
    "EventStatus",
    "EventStore",
    "HandlerExecutionError",
    "HandlerRegistry",
    "JobContext",
    "NoHandlerError",
    "PersistenceError",
    "RealtimeBroadcaster",
    "TickSummary",
    "ValidationError",
]
