"""In-process realtime broadcaster: republishes event-row changes to subscribers.

The store calls publish() after every committed mutation. Delivery is best
effort: a failing subscriber is logged and never affects the engine.
"""

import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable

from eventqueue.events.models import Event
from eventqueue.events.registry import matches, validate_pattern

logger = logging.getLogger(__name__)

OnEvent = Callable[[Event], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class RealtimeBroadcaster:
    """Observer over system_events changes, keyed by event-type patterns."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, tuple[tuple[str, ...], OnEvent]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, event_types: list[str] | tuple[str, ...], on_event: OnEvent) -> Unsubscribe:
        """Call on_event for every change of a matching event. Returns an unsubscribe callable."""
        if isinstance(event_types, str):
            event_types = [event_types]
        patterns = tuple(validate_pattern(p) for p in event_types)
        if not patterns:
            raise ValueError("At least one event type pattern is required")
        sub_id = next(self._ids)
        self._subscriptions[sub_id] = (patterns, on_event)

        def unsubscribe() -> None:
            self._subscriptions.pop(sub_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: Event) -> None:
        """Deliver one changed row to all matching subscribers."""
        for patterns, on_event in list(self._subscriptions.values()):
            if not any(matches(p, event.event_type) for p in patterns):
                continue
            try:
                outcome: Any = on_event(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.exception(
                    "Realtime subscriber failed for event %s/%s: %s",
                    event.event_type,
                    event.id,
                    e,
                )
