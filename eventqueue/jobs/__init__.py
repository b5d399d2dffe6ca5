"""Built-in job handlers registered by the runner."""

from eventqueue.events.registry import HandlerRegistry
from eventqueue.jobs.report import GenerateReportParams, generate_report


def register_builtin_jobs(registry: HandlerRegistry) -> None:
    """Register the built-in job:* handlers."""
    registry.register("job:generate-report", generate_report, GenerateReportParams)


__all__ = ["GenerateReportParams", "generate_report", "register_builtin_jobs"]
