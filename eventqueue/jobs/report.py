"""Sample report job: demonstrates progress reporting from a long-running handler."""

import asyncio
import logging
from datetime import date, datetime, timezone

from pydantic import BaseModel, Field, model_validator

from eventqueue.events.context import JobContext

logger = logging.getLogger(__name__)


class GenerateReportParams(BaseModel):
    """Payload of job:generate-report."""

    report_type: str = Field(min_length=1)
    start_date: date
    end_date: date
    step_delay: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _check_range(self) -> "GenerateReportParams":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ReportResult(BaseModel):
    report_type: str
    days: int
    records: int
    generated_at: datetime
    date_range: dict[str, date]


async def generate_report(params: GenerateReportParams, ctx: JobContext) -> ReportResult:
    """Build a summary over the date range, reporting progress at 20/60/90%."""
    await ctx.update_progress(20)
    logger.info(
        "Generating %s report %s..%s (event %s, attempt %d)",
        params.report_type,
        params.start_date,
        params.end_date,
        ctx.event_id,
        ctx.attempt,
    )

    await asyncio.sleep(params.step_delay)
    days = (params.end_date - params.start_date).days + 1
    await ctx.update_progress(60)

    await asyncio.sleep(params.step_delay)
    records = days * 24
    await ctx.update_progress(90)

    return ReportResult(
        report_type=params.report_type,
        days=days,
        records=records,
        generated_at=datetime.now(timezone.utc),
        date_range={"start_date": params.start_date, "end_date": params.end_date},
    )
