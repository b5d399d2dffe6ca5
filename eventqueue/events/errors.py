"""Exception hierarchy for the event queue engine."""


class EventQueueError(Exception):
    """Base class for all event queue errors."""


class ValidationError(EventQueueError):
    """Rejected at emit time: bad event type, payload or options. No row is created."""


class NoHandlerError(EventQueueError):
    """No registered handler matches the event type. Routed through retry like a handler failure."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"No handler registered for event type: {event_type}")
        self.event_type = event_type


class HandlerExecutionError(EventQueueError):
    """Handler raised, returned an error, or produced a result that cannot be stored."""


class PersistenceError(EventQueueError):
    """Store unreachable or a statement failed. Aborts the current batch."""
