"""Tests for built-in jobs and the runner wiring."""

from pathlib import Path

import pytest

from eventqueue import runner
from eventqueue.events import (
    Dispatcher,
    Emitter,
    EventStatus,
    EventStore,
    HandlerRegistry,
    RealtimeBroadcaster,
    ValidationError,
)
from eventqueue.jobs import register_builtin_jobs
from eventqueue.settings import get_default_settings


@pytest.fixture
def job_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    register_builtin_jobs(registry)
    return registry


class TestGenerateReport:
    """job:generate-report: progress milestones, result shape, payload checks."""

    @pytest.mark.asyncio
    async def test_report_job_end_to_end(
        self, store: EventStore, broadcaster: RealtimeBroadcaster, job_registry: HandlerRegistry, clock
    ) -> None:
        progress: list[int] = []
        broadcaster.subscribe(["job:generate-report"], lambda e: progress.append(e.progress))
        emitter = Emitter(store, job_registry, clock=clock)

        event = await emitter.submit_job(
            "generate-report",
            {"report_type": "sales", "start_date": "2024-01-01", "end_date": "2024-01-31"},
        )
        summary = await Dispatcher(store, job_registry, clock=clock).tick()

        assert summary.completed == 1
        row = await store.get(event.id)
        assert row.status == EventStatus.COMPLETED
        assert row.progress == 100
        assert row.result["report_type"] == "sales"
        assert row.result["days"] == 31
        assert row.result["records"] == 31 * 24
        assert row.result["date_range"] == {"start_date": "2024-01-01", "end_date": "2024-01-31"}
        assert [p for p in progress if 0 < p < 100] == [20, 60, 90]
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_payload_normalized_at_emit(
        self, store: EventStore, job_registry: HandlerRegistry, clock
    ) -> None:
        event = await Emitter(store, job_registry, clock=clock).submit_job(
            "generate-report",
            {"report_type": "ops", "start_date": "2024-02-01", "end_date": "2024-02-01"},
        )
        assert event.payload == {
            "report_type": "ops",
            "start_date": "2024-02-01",
            "end_date": "2024-02-01",
            "step_delay": 0.0,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [
            {"report_type": "sales", "start_date": "2024-02-01", "end_date": "2024-01-01"},
            {"report_type": "", "start_date": "2024-01-01", "end_date": "2024-01-02"},
            {"report_type": "sales", "start_date": "yesterday", "end_date": "2024-01-02"},
            {"report_type": "sales"},
        ],
    )
    async def test_invalid_params_rejected_at_emit(
        self, store: EventStore, job_registry: HandlerRegistry, clock, params
    ) -> None:
        with pytest.raises(ValidationError):
            await Emitter(store, job_registry, clock=clock).submit_job("generate-report", params)


class TestRunnerWiring:
    """build_* helpers read the settings tree."""

    @pytest.mark.asyncio
    async def test_build_store_resolves_relative_db_path(self, tmp_path: Path) -> None:
        settings = get_default_settings()
        settings["store"]["db_path"] = "state/queue.db"
        store = runner.build_store(settings, project_root=tmp_path)
        try:
            await store.ensure_conn()
            assert (tmp_path / "state" / "queue.db").exists()
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_built_emitter_and_dispatcher_use_settings(
        self, tmp_path: Path, job_registry: HandlerRegistry
    ) -> None:
        settings = get_default_settings()
        settings["store"]["db_path"] = str(tmp_path / "events.db")
        settings["emitter"]["default_max_retries"] = 6
        settings["dispatcher"]["batch_size"] = 1
        store = runner.build_store(settings)
        try:
            emitter = runner.build_emitter(settings, store, job_registry)
            dispatcher = runner.build_dispatcher(settings, store, job_registry)
            first = await emitter.emit("e.unhandled", {}, {"scheduled_at": 0.0})
            await emitter.emit("e.unhandled", {}, {"scheduled_at": 1.0})
            assert first.max_retries == 6

            summary = await dispatcher.tick()
            assert summary.claimed == 1
            assert summary.retried == 1
        finally:
            await store.close()

    def test_parse_args(self, tmp_path: Path) -> None:
        args = runner._parse_args(["--once", "--config", str(tmp_path)])
        assert args.once is True
        assert args.config == tmp_path
        assert runner._parse_args([]).once is False
