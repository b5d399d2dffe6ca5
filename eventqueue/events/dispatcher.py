"""Dispatcher: claim due events, run their handlers, finalize or retry.

Each tick is stateless: one atomic claim, then one handler attempt per
claimed row. start()/stop() drive ticks from an asyncio task on a fixed
interval or a cron schedule.
"""

import asyncio
import logging
import os
import time
import uuid
from typing import Any, Callable

from croniter import croniter
from pydantic import BaseModel

from eventqueue.events.context import JobContext
from eventqueue.events.errors import (
    HandlerExecutionError,
    NoHandlerError,
    PersistenceError,
)
from eventqueue.events.models import Event, EventStatus, TickSummary
from eventqueue.events.registry import HandlerRegistry
from eventqueue.events.retry import DEFAULT_BASE_DELAY, decide
from eventqueue.events.store import EventStore, dumps

logger = logging.getLogger(__name__)

_COMPLETED = "completed"
_RETRIED = "retried"
_FAILED = "failed"
_LOST = "lost"


def _failure_detail(exc: BaseException) -> str:
    message = str(exc)
    if isinstance(exc, (NoHandlerError, HandlerExecutionError)):
        return message
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _encode_result(value: Any) -> str:
    """JSON text for the result column. Pydantic models are dumped in JSON mode."""
    if isinstance(value, BaseException):
        raise HandlerExecutionError(_failure_detail(value)) from value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    try:
        return dumps(value)
    except (TypeError, ValueError) as e:
        raise HandlerExecutionError(f"Handler result is not JSON-serializable: {e}") from e


class Dispatcher:
    """Periodic batch processor over the event store."""

    def __init__(
        self,
        store: EventStore,
        registry: HandlerRegistry,
        batch_size: int = 10,
        max_concurrency: int = 10,
        stale_timeout: float = 300.0,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float | None = None,
        poll_interval: float = 60.0,
        schedule: str | None = None,
        clock: Callable[[], float] = time.time,
        dispatcher_id: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if schedule is not None and not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron schedule: {schedule!r}")
        self._store = store
        self._registry = registry
        self._batch_size = batch_size
        self._max_concurrency = max_concurrency
        self._stale_timeout = stale_timeout
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._poll_interval = poll_interval
        self._schedule = schedule
        self._clock = clock
        self._dispatcher_id = dispatcher_id or f"dispatcher-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._task: asyncio.Task[None] | None = None

    @property
    def dispatcher_id(self) -> str:
        return self._dispatcher_id

    async def tick(self) -> TickSummary:
        """Claim one batch and process it. PersistenceError aborts the batch and propagates."""
        token = f"{self._dispatcher_id}:{uuid.uuid4().hex}"
        claimed, stale_failed = await self._store.claim_due(
            now=self._clock(),
            limit=self._batch_size,
            token=token,
            stale_timeout=self._stale_timeout,
        )
        summary = TickSummary(claimed=len(claimed), stale_failed=len(stale_failed))
        for event in stale_failed:
            logger.error(
                "Dispatcher: event %s (%s) failed after stale processing, retries exhausted",
                event.id,
                event.event_type,
            )
        if not claimed:
            if stale_failed:
                self._log_summary(summary)
            return summary

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(event: Event) -> str:
            async with semaphore:
                return await self._process(event, token)

        outcomes = await asyncio.gather(
            *(run(event) for event in claimed), return_exceptions=True
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        for outcome in outcomes:
            if outcome == _COMPLETED:
                summary.completed += 1
            elif outcome == _RETRIED:
                summary.retried += 1
            elif outcome == _FAILED:
                summary.failed += 1
        self._log_summary(summary)
        if errors:
            persistence = [e for e in errors if isinstance(e, PersistenceError)]
            raise (persistence or errors)[0]
        return summary

    def _log_summary(self, summary: TickSummary) -> None:
        logger.info(
            "Dispatcher tick: claimed=%d completed=%d retried=%d failed=%d stale_failed=%d",
            summary.claimed,
            summary.completed,
            summary.retried,
            summary.failed,
            summary.stale_failed,
        )

    async def _process(self, event: Event, token: str) -> str:
        """Run one handler attempt for a claimed event and finalize the row."""
        ctx = JobContext(self._store, event, token, clock=self._clock)
        try:
            entry = self._registry.lookup(event.event_type)
            if entry is None:
                raise NoHandlerError(event.event_type)
            payload = entry.parse_payload(event.payload)
            value = await entry.handler(payload, ctx)
            result = _encode_result(value)
        except PersistenceError:
            raise
        except Exception as e:
            return await self._handle_failure(event, token, e)

        finalized = await self._store.complete(event.id, token, result, self._clock())
        if finalized is None:
            logger.warning(
                "Dispatcher: lost claim on event %s before completion; result discarded",
                event.id,
            )
            return _LOST
        logger.debug("Dispatcher: event %s (%s) completed", event.id, event.event_type)
        return _COMPLETED

    async def _handle_failure(self, event: Event, token: str, exc: Exception) -> str:
        detail = _failure_detail(exc)
        if not isinstance(exc, (NoHandlerError, HandlerExecutionError)):
            logger.error(
                "Dispatcher: handler for %s/%s raised: %s",
                event.event_type,
                event.id,
                detail,
                exc_info=exc,
            )
        now = self._clock()
        decision = decide(event, detail, now, self._base_delay, self._max_delay)
        if decision.requeue:
            updated = await self._store.requeue(
                event.id,
                token,
                decision.retry_count,
                decision.error_message,
                decision.scheduled_at or now,
                now,
            )
        else:
            updated = await self._store.fail(event.id, token, decision.error_message, now)
        if updated is None:
            logger.warning("Dispatcher: lost claim on event %s before recording failure", event.id)
            return _LOST
        if updated.status == EventStatus.PENDING:
            logger.warning(
                "Dispatcher: retrying event %s/%s (attempt %d/%d) at %.0f: %s",
                event.event_type,
                event.id,
                updated.retry_count,
                updated.max_retries,
                updated.scheduled_at,
                detail,
            )
            return _RETRIED
        logger.error(
            "Dispatcher: event %s/%s failed after %d retries: %s",
            event.event_type,
            event.id,
            updated.retry_count,
            detail,
        )
        return _FAILED

    def _next_delay(self) -> float:
        if self._schedule:
            now = self._clock()
            return max(croniter(self._schedule, now).get_next(float) - now, 0.0)
        return self._poll_interval

    async def start(self) -> None:
        """Start the periodic tick loop as an asyncio Task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Dispatcher %s started (%s)",
            self._dispatcher_id,
            f"cron {self._schedule}" if self._schedule else f"every {self._poll_interval}s",
        )

    async def stop(self) -> None:
        """Cancel the loop; an in-flight tick is cancelled with it."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Dispatcher %s stopped", self._dispatcher_id)

    async def run_forever(self) -> None:
        """Tick until cancelled."""
        await self._loop()

    async def _loop(self) -> None:
        # Tick first, then wait for the next slot
        while True:
            try:
                await self.tick()
            except PersistenceError as e:
                logger.error("Dispatcher tick aborted, store unavailable: %s", e)
            except Exception as e:
                logger.exception("Dispatcher tick failed: %s", e)
            await asyncio.sleep(self._next_delay())
