"""Event model and value types for the event queue."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "EmitOptions",
    "Event",
    "EventFilters",
    "EventStatistics",
    "EventStatus",
    "TickSummary",
]


class EventStatus:
    """Lifecycle states of an event row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    # Only reachable from pending via EventRepository.cancel
    CANCELLED = "cancelled"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)


@dataclass(frozen=True)
class Event:
    """Immutable snapshot of one system_events row."""

    id: str
    event_type: str
    payload: dict
    status: str
    priority: int
    scheduled_at: float
    progress: int
    result: Any
    error_message: str | None
    retry_count: int
    max_retries: int
    processing_started_at: float | None
    completed_at: float | None
    created_at: float
    updated_at: float
    user_id: str | None = None
    claimed_by: str | None = None
    heartbeat_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in EventStatus.TERMINAL


# Columns are SQLite INTEGER (signed 64-bit)
_SQLITE_INT_MIN = -(2**63)
_SQLITE_INT_MAX = 2**63 - 1


def _to_epoch(value: float | datetime | None) -> float | None:
    if value is None or isinstance(value, (int, float)):
        return value
    # Naive datetimes are taken as local time
    return value.timestamp()


class EmitOptions(BaseModel):
    """Options accepted by Emitter.emit. Unknown fields are rejected."""

    model_config = {"extra": "forbid"}

    priority: int = Field(default=0, ge=_SQLITE_INT_MIN, le=_SQLITE_INT_MAX)
    scheduled_at: float | None = None
    max_retries: int | None = Field(default=None, ge=0, le=_SQLITE_INT_MAX - 1)
    user_id: str | None = None

    @field_validator("scheduled_at", mode="before")
    @classmethod
    def _coerce_scheduled_at(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _to_epoch(value)
        return value

    @field_validator("scheduled_at")
    @classmethod
    def _finite_scheduled_at(cls, value: float | None) -> float | None:
        if value is not None and not math.isfinite(value):
            raise ValueError("scheduled_at must be a finite timestamp")
        return value


class EventFilters(BaseModel):
    """Filters for EventRepository.list_events."""

    event_type: str | None = None
    status: str | None = None
    user_id: str | None = None
    created_from: float | None = None
    created_to: float | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("created_from", "created_to", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _to_epoch(value)
        return value


class EventStatistics(BaseModel):
    """Aggregate counts over the whole table."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    last_24h: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


@dataclass
class TickSummary:
    """Counts from one dispatcher tick."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    stale_failed: int = 0
