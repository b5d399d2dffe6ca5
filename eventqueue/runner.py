"""Entry point for the dispatcher process: build store, registry, dispatcher; tick until stopped."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from eventqueue.events import (
    Dispatcher,
    Emitter,
    EventStore,
    HandlerRegistry,
    RealtimeBroadcaster,
)
from eventqueue.jobs import register_builtin_jobs
from eventqueue.logging_config import setup_logging
from eventqueue.settings import get_setting, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def build_store(
    settings: dict[str, Any],
    project_root: Path = _PROJECT_ROOT,
    broadcaster: RealtimeBroadcaster | None = None,
) -> EventStore:
    db_path = Path(get_setting(settings, "store.db_path", "data/events.db"))
    if not db_path.is_absolute():
        db_path = project_root / db_path
    return EventStore(
        db_path=db_path,
        busy_timeout=get_setting(settings, "store.busy_timeout", 5000),
        broadcaster=broadcaster,
    )


def build_dispatcher(
    settings: dict[str, Any], store: EventStore, registry: HandlerRegistry
) -> Dispatcher:
    return Dispatcher(
        store,
        registry,
        batch_size=get_setting(settings, "dispatcher.batch_size", 10),
        max_concurrency=get_setting(settings, "dispatcher.max_concurrency", 10),
        stale_timeout=get_setting(settings, "dispatcher.stale_timeout", 300.0),
        base_delay=get_setting(settings, "retry.base_delay", 300.0),
        max_delay=get_setting(settings, "retry.max_delay"),
        poll_interval=get_setting(settings, "dispatcher.poll_interval", 60.0),
        schedule=get_setting(settings, "dispatcher.schedule"),
    )


def build_emitter(
    settings: dict[str, Any], store: EventStore, registry: HandlerRegistry | None = None
) -> Emitter:
    return Emitter(
        store,
        registry,
        default_max_retries=get_setting(settings, "emitter.default_max_retries", 3),
    )


async def main_async(once: bool = False, config_dir: Path | None = None) -> None:
    """Bootstrap: settings -> logging -> store -> registry -> dispatcher -> tick loop."""
    settings = load_settings(config_dir)
    setup_logging(_PROJECT_ROOT, settings, console=True if once else None)
    store = build_store(settings)
    registry = HandlerRegistry()
    register_builtin_jobs(registry)
    dispatcher = build_dispatcher(settings, store, registry)
    logger.info("Handlers registered: %s", ", ".join(registry.patterns) or "none")
    try:
        if once:
            await dispatcher.tick()
        else:
            await dispatcher.run_forever()
    except asyncio.CancelledError:
        pass
    finally:
        await store.close()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="eventqueue", description="Run the event dispatcher.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument("--config", type=Path, default=None, help="directory holding settings.yaml")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry for the dispatcher process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    args = _parse_args(argv)
    try:
        asyncio.run(main_async(once=args.once, config_dir=args.config))
    except KeyboardInterrupt:
        pass


__all__ = ["build_dispatcher", "build_emitter", "build_store", "main"]
