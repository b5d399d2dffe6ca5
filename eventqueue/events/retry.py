"""Retry decision after a failed attempt: linear backoff, bounded budget."""

from dataclasses import dataclass

from eventqueue.events.models import Event, EventStatus

DEFAULT_BASE_DELAY = 300.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of decide(): either a re-queue at scheduled_at or a terminal failure."""

    status: str
    retry_count: int
    error_message: str
    scheduled_at: float | None = None
    completed_at: float | None = None

    @property
    def requeue(self) -> bool:
        return self.status == EventStatus.PENDING


def backoff(
    retry_count: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float | None = None,
) -> float:
    """Linear backoff: base_delay * retry_count, optionally capped at max_delay."""
    delay = base_delay * max(retry_count, 0)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def decide(
    event: Event,
    error_message: str,
    now: float,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float | None = None,
) -> RetryDecision:
    """Pure decision for a failed attempt of event (as claimed)."""
    next_count = event.retry_count + 1
    if next_count <= event.max_retries:
        return RetryDecision(
            status=EventStatus.PENDING,
            retry_count=next_count,
            error_message=error_message,
            scheduled_at=now + backoff(next_count, base_delay, max_delay),
        )
    return RetryDecision(
        status=EventStatus.FAILED,
        retry_count=event.retry_count,
        error_message=error_message,
        completed_at=now,
    )
