"""Event queries and admin operations: get, list, statistics, manual retry, cancel."""

import logging
import time
from typing import Any, Callable

from eventqueue.events.models import Event, EventFilters, EventStatistics, EventStatus
from eventqueue.events.store import EventStore, row_to_event

logger = logging.getLogger(__name__)

_DAY_SEC = 24 * 60 * 60


class EventRepository:
    """Read side and manual interventions over system_events."""

    def __init__(self, store: EventStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def get(self, event_id: str) -> Event | None:
        """Event by id, or None."""
        return await self._store.get(event_id)

    async def list_events(self, filters: EventFilters | None = None) -> list[Event]:
        """Events matching filters, newest first."""
        f = filters or EventFilters()
        clauses: list[str] = []
        params: list[Any] = []
        if f.event_type:
            clauses.append("event_type = ?")
            params.append(f.event_type)
        if f.status:
            if f.status not in EventStatus.ALL:
                raise ValueError(f"Unknown status: {f.status}")
            clauses.append("status = ?")
            params.append(f.status)
        if f.user_id:
            clauses.append("user_id = ?")
            params.append(f.user_id)
        if f.created_from is not None:
            clauses.append("created_at >= ?")
            params.append(f.created_from)
        if f.created_to is not None:
            clauses.append("created_at <= ?")
            params.append(f.created_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._store.fetch_all(
            f"SELECT * FROM system_events {where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, f.limit, f.offset],
        )
        return [row_to_event(r) for r in rows]

    async def statistics(self) -> EventStatistics:
        """Counts per status, events created in the last 24h, and counts per event type."""
        stats = EventStatistics()
        rows = await self._store.fetch_all(
            "SELECT status, COUNT(*) AS n FROM system_events GROUP BY status"
        )
        for row in rows:
            if row["status"] in EventStatus.ALL:
                setattr(stats, row["status"], row["n"])
            stats.total += row["n"]
        rows = await self._store.fetch_all(
            "SELECT COUNT(*) AS n FROM system_events WHERE created_at > ?",
            (self._clock() - _DAY_SEC,),
        )
        stats.last_24h = rows[0]["n"] if rows else 0
        rows = await self._store.fetch_all(
            "SELECT event_type, COUNT(*) AS n FROM system_events GROUP BY event_type"
        )
        stats.by_type = {row["event_type"]: row["n"] for row in rows}
        return stats

    async def retry(self, event_id: str) -> Event | None:
        """Put a failed event back in the queue with a fresh retry budget. None if not failed."""
        event = await self._store.reset_failed(event_id, self._clock())
        if event is not None:
            logger.info("Event %s (%s) manually re-queued", event.id, event.event_type)
        return event

    async def cancel(self, event_id: str) -> bool:
        """Cancel a pending event. Claimed or finished events cannot be cancelled."""
        event = await self._store.cancel_pending(event_id, self._clock())
        if event is None:
            return False
        logger.info("Event %s (%s) cancelled", event.id, event.event_type)
        return True
