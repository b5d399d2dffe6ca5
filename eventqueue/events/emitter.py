"""Emitter: validates and inserts new pending events. Never runs handlers."""

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from eventqueue.events.errors import ValidationError
from eventqueue.events.models import EmitOptions, Event
from eventqueue.events.registry import HandlerRegistry
from eventqueue.events.store import EventStore, dumps

logger = logging.getLogger(__name__)

JOB_PREFIX = "job:"

BatchItem = tuple[str, Any] | tuple[str, Any, EmitOptions | Mapping | None]


class Emitter:
    """Client-facing API that creates event rows.

    Execution is always deferred to the next dispatcher tick, even when
    scheduled_at is now or in the past.
    """

    def __init__(
        self,
        store: EventStore,
        registry: HandlerRegistry | None = None,
        default_max_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._default_max_retries = default_max_retries
        self._clock = clock

    async def emit(
        self,
        event_type: str,
        payload: Any = None,
        options: EmitOptions | Mapping | None = None,
    ) -> Event:
        """Insert one pending event and return it. Raises ValidationError; no row on failure."""
        record = self._prepare(event_type, payload, options, self._clock())
        events = await self._store.insert_many([record])
        event = events[0]
        logger.debug("Emitted event %s (%s)", event.id, event.event_type)
        return event

    async def emit_batch(self, items: list[BatchItem]) -> list[Event]:
        """Insert several events in one transaction. All are validated before any is written."""
        now = self._clock()
        records = []
        for item in items:
            if not isinstance(item, tuple) or len(item) not in (2, 3):
                raise ValidationError("Batch items must be (event_type, payload[, options])")
            event_type, payload, *rest = item
            records.append(self._prepare(event_type, payload, rest[0] if rest else None, now))
        events = await self._store.insert_many(records)
        if events:
            logger.debug("Emitted batch of %d events", len(events))
        return events

    async def submit_job(
        self,
        job_type: str,
        params: Any = None,
        options: EmitOptions | Mapping | None = None,
    ) -> Event:
        """Queue an async job: shorthand for emit('job:<job_type>', params)."""
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValidationError("job_type must be a non-empty string")
        return await self.emit(f"{JOB_PREFIX}{job_type}", params, options)

    def _prepare(
        self,
        event_type: Any,
        payload: Any,
        options: EmitOptions | Mapping | None,
        now: float,
    ) -> dict[str, Any]:
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("event_type must be a non-empty string")
        opts = self._parse_options(options)
        data = self._validate_payload(event_type, payload)
        try:
            encoded = dumps(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload for {event_type} is not JSON-serializable: {e}") from e
        max_retries = (
            opts.max_retries if opts.max_retries is not None else self._default_max_retries
        )
        return {
            "id": str(uuid.uuid4()),
            "event_type": event_type,
            "payload": encoded,
            "priority": opts.priority,
            "scheduled_at": opts.scheduled_at if opts.scheduled_at is not None else now,
            "max_retries": max_retries,
            "user_id": opts.user_id,
            "created_at": now,
        }

    @staticmethod
    def _parse_options(options: EmitOptions | Mapping | None) -> EmitOptions:
        if options is None:
            return EmitOptions()
        if isinstance(options, EmitOptions):
            return options
        try:
            return EmitOptions.model_validate(dict(options))
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid emit options: {e}") from e

    def _validate_payload(self, event_type: str, payload: Any) -> dict:
        if payload is None:
            payload = {}
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        if not isinstance(payload, Mapping):
            raise ValidationError(
                f"Payload for {event_type} must be an object, got {type(payload).__name__}"
            )
        payload = dict(payload)
        entry = self._registry.lookup(event_type) if self._registry else None
        if entry is None or entry.payload_model is None:
            return payload
        try:
            model = entry.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Payload for {event_type} does not match {entry.payload_model.__name__}: {e}"
            ) from e
        return model.model_dump(mode="json")
