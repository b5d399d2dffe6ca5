"""JobContext: what a handler sees besides its payload. Carries the progress reporter."""

import logging
import time
from typing import TYPE_CHECKING, Callable

from eventqueue.events.models import Event

if TYPE_CHECKING:
    from eventqueue.events.store import EventStore

logger = logging.getLogger(__name__)

# 100 is written only by the dispatcher when it finalizes a completed row
MAX_REPORTED_PROGRESS = 99


class JobContext:
    """Bound to one claimed row for the duration of one handler attempt."""

    def __init__(
        self,
        store: "EventStore",
        event: Event,
        claim_token: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._event = event
        self._token = claim_token
        self._clock = clock
        self._progress = 0

    @property
    def event_id(self) -> str:
        return self._event.id

    @property
    def event_type(self) -> str:
        return self._event.event_type

    @property
    def user_id(self) -> str | None:
        return self._event.user_id

    @property
    def attempt(self) -> int:
        """1 for the first run, 2 for the first retry, and so on."""
        return self._event.retry_count + 1

    @property
    def progress(self) -> int:
        """Last progress value this context wrote."""
        return self._progress

    async def update_progress(self, percent: int | float) -> bool:
        """Report progress in [0, 100). Lower-than-current values are ignored.

        Returns True if the row was updated. False means the value did not
        raise progress, or the claim on the row was lost.
        """
        if isinstance(percent, bool) or not isinstance(percent, (int, float)):
            raise TypeError(f"progress must be a number, got {type(percent).__name__}")
        value = min(max(int(percent), 0), MAX_REPORTED_PROGRESS)
        if value <= self._progress:
            return False
        updated = await self._store.update_progress(
            self._event.id, self._token, value, self._clock()
        )
        if updated is None:
            logger.debug("progress %d not written for event %s", value, self._event.id)
            return False
        self._progress = updated.progress
        return True

    async def heartbeat(self) -> bool:
        """Renew the claim without reporting progress. Long handlers that
        go quiet for more than stale_timeout should call this periodically.

        Returns False if the claim on the row was lost.
        """
        return await self._store.heartbeat(self._event.id, self._token, self._clock())
