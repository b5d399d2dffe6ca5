"""SQLite store for system_events: the single source of truth for event state."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from eventqueue.events.errors import PersistenceError
from eventqueue.events.models import Event
from eventqueue.events.realtime import RealtimeBroadcaster

logger = logging.getLogger(__name__)

STALE_ERROR = "stale: processing timed out"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS system_events (
    id                    TEXT    PRIMARY KEY,
    event_type            TEXT    NOT NULL,
    payload               TEXT    NOT NULL DEFAULT '{}',
    status                TEXT    NOT NULL DEFAULT 'pending'
                          CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
    priority              INTEGER NOT NULL DEFAULT 0,
    scheduled_at          REAL    NOT NULL,
    progress              INTEGER NOT NULL DEFAULT 0 CHECK (progress >= 0 AND progress <= 100),
    result                TEXT,
    error_message         TEXT,
    retry_count           INTEGER NOT NULL DEFAULT 0,
    max_retries           INTEGER NOT NULL DEFAULT 3,
    processing_started_at REAL,
    completed_at          REAL,
    user_id               TEXT,
    claimed_by            TEXT,
    heartbeat_at          REAL,
    created_at            REAL    NOT NULL,
    updated_at            REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_se_status_scheduled ON system_events(status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_se_event_type ON system_events(event_type);
CREATE INDEX IF NOT EXISTS idx_se_user_status ON system_events(user_id, status);
CREATE INDEX IF NOT EXISTS idx_se_created ON system_events(created_at DESC);
"""

_FAIL_STALE = """
UPDATE system_events
SET status = 'failed', error_message = :error, completed_at = :now,
    claimed_by = NULL, updated_at = :now
WHERE status = 'processing'
  AND COALESCE(heartbeat_at, processing_started_at) <= :stale_before
  AND retry_count >= max_retries
RETURNING *
"""

# Right-hand side of SET sees the pre-update row, so the CASEs tell a stale
# reclaim (counts as a failed attempt) apart from a normal pending claim.
_CLAIM = """
UPDATE system_events
SET status = 'processing',
    retry_count = retry_count + CASE WHEN status = 'processing' THEN 1 ELSE 0 END,
    error_message = CASE WHEN status = 'processing' THEN :error ELSE error_message END,
    processing_started_at = :now,
    heartbeat_at = :now,
    claimed_by = :token,
    progress = 0,
    updated_at = :now
WHERE id IN (
    SELECT id FROM system_events
    WHERE (status = 'pending' AND scheduled_at <= :now)
       OR (status = 'processing'
           AND COALESCE(heartbeat_at, processing_started_at) <= :stale_before
           AND retry_count < max_retries)
    ORDER BY priority DESC, scheduled_at ASC
    LIMIT :limit
)
RETURNING *
"""


def dumps(obj: Any) -> str:
    """Serialize to JSON for storage; strict (no NaN), Unicode kept as-is."""
    return json.dumps(obj, ensure_ascii=False, allow_nan=False)


def row_to_event(row: aiosqlite.Row | dict) -> Event:
    """Convert a system_events row to an Event."""
    d = dict(row)
    payload = json.loads(d["payload"]) if isinstance(d["payload"], str) else d["payload"]
    result = d.get("result")
    if isinstance(result, str):
        result = json.loads(result)
    return Event(
        id=d["id"],
        event_type=d["event_type"],
        payload=payload or {},
        status=d["status"],
        priority=d["priority"] or 0,
        scheduled_at=d["scheduled_at"],
        progress=d["progress"] or 0,
        result=result,
        error_message=d.get("error_message"),
        retry_count=d["retry_count"] or 0,
        max_retries=d["max_retries"] or 0,
        processing_started_at=d.get("processing_started_at"),
        completed_at=d.get("completed_at"),
        created_at=d["created_at"],
        updated_at=d["updated_at"],
        user_id=d.get("user_id"),
        claimed_by=d.get("claimed_by"),
        heartbeat_at=d.get("heartbeat_at"),
    )


def _by_claim_order(event: Event) -> tuple[int, float]:
    return (-event.priority, event.scheduled_at)


class EventStore:
    """SQLite-backed event store. One connection per instance.

    Several stores (in one or many processes) may share the same database
    file; the claim runs under BEGIN IMMEDIATE so only one of them can
    move a given row to 'processing'.
    """

    def __init__(
        self,
        db_path: Path,
        busy_timeout: int = 5000,
        broadcaster: RealtimeBroadcaster | None = None,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._broadcaster = broadcaster
        self._conn: aiosqlite.Connection | None = None
        # One connection carries one transaction at a time; every statement runs under this lock
        self._lock = asyncio.Lock()

    @property
    def broadcaster(self) -> RealtimeBroadcaster | None:
        return self._broadcaster

    async def ensure_conn(self) -> aiosqlite.Connection:
        """Open connection and ensure schema. Idempotent."""
        if self._conn is None:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self._db_path))
                conn.row_factory = aiosqlite.Row
                await conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.executescript(_SCHEMA)
                await conn.commit()
            except (aiosqlite.Error, OSError) as e:
                raise PersistenceError(f"Cannot open event store at {self._db_path}: {e}") from e
            self._conn = conn
            logger.debug("event store: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self, immediate: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements in one transaction; commit on success, roll back and wrap errors otherwise."""
        async with self._lock:
            conn = await self.ensure_conn()
            try:
                if immediate:
                    await conn.execute("BEGIN IMMEDIATE")
                yield conn
                await conn.commit()
            except aiosqlite.Error as e:
                await self._safe_rollback(conn)
                raise PersistenceError(str(e)) from e
            except BaseException:
                await self._safe_rollback(conn)
                raise

    @staticmethod
    async def _safe_rollback(conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except aiosqlite.Error as e:
            logger.warning("event store: rollback failed: %s", e)

    async def notify(self, events: list[Event]) -> None:
        """Publish changed rows to the realtime broadcaster, if any."""
        if self._broadcaster is None:
            return
        for event in events:
            await self._broadcaster.publish(event)

    async def _update_one(self, sql: str, params: dict[str, Any]) -> Event | None:
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        if not rows:
            return None
        event = row_to_event(rows[0])
        await self.notify([event])
        return event

    async def insert_many(self, records: list[dict[str, Any]]) -> list[Event]:
        """Insert prepared rows in one transaction. Payloads must already be JSON strings."""
        if not records:
            return []
        async with self.transaction() as conn:
            for rec in records:
                await conn.execute(
                    """
                    INSERT INTO system_events (id, event_type, payload, status, priority,
                        scheduled_at, progress, retry_count, max_retries, user_id,
                        created_at, updated_at)
                    VALUES (:id, :event_type, :payload, 'pending', :priority,
                        :scheduled_at, 0, 0, :max_retries, :user_id,
                        :created_at, :created_at)
                    """,
                    rec,
                )
            placeholders = ",".join("?" * len(records))
            cursor = await conn.execute(
                f"SELECT * FROM system_events WHERE id IN ({placeholders})",
                [rec["id"] for rec in records],
            )
            rows = await cursor.fetchall()
        by_id = {row["id"]: row_to_event(row) for row in rows}
        events = [by_id[rec["id"]] for rec in records]
        await self.notify(events)
        return events

    async def get(self, event_id: str) -> Event | None:
        """Load one event by id."""
        rows = await self.fetch_all("SELECT * FROM system_events WHERE id = ?", (event_id,))
        return row_to_event(rows[0]) if rows else None

    async def claim_due(
        self,
        now: float,
        limit: int,
        token: str,
        stale_timeout: float,
    ) -> tuple[list[Event], list[Event]]:
        """Atomically claim due pending rows and stale processing rows.

        In the same transaction, stale rows whose retry budget is spent are
        failed. Returns (claimed, stale_failed); claimed is in claim order
        (priority desc, scheduled_at asc). A row claimed by a concurrent
        dispatcher simply does not appear.
        """
        params = {
            "now": now,
            "stale_before": now - stale_timeout,
            "token": token,
            "limit": limit,
            "error": STALE_ERROR,
        }
        async with self.transaction(immediate=True) as conn:
            cursor = await conn.execute(_FAIL_STALE, params)
            failed_rows = await cursor.fetchall()
            cursor = await conn.execute(_CLAIM, params)
            claimed_rows = await cursor.fetchall()
        stale_failed = [row_to_event(r) for r in failed_rows]
        claimed = sorted((row_to_event(r) for r in claimed_rows), key=_by_claim_order)
        await self.notify(stale_failed + claimed)
        return claimed, stale_failed

    async def complete(self, event_id: str, token: str, result: str, now: float) -> Event | None:
        """Finalize a claimed row as completed. None if the claim was lost."""
        return await self._update_one(
            """
            UPDATE system_events
            SET status = 'completed', progress = 100, result = :result,
                completed_at = :now, claimed_by = NULL, updated_at = :now
            WHERE id = :id AND status = 'processing' AND claimed_by = :token
            RETURNING *
            """,
            {"id": event_id, "token": token, "result": result, "now": now},
        )

    async def requeue(
        self,
        event_id: str,
        token: str,
        retry_count: int,
        error_message: str,
        scheduled_at: float,
        now: float,
    ) -> Event | None:
        """Return a claimed row to pending for another attempt. None if the claim was lost."""
        return await self._update_one(
            """
            UPDATE system_events
            SET status = 'pending', retry_count = :retry_count, error_message = :error,
                scheduled_at = :scheduled_at, progress = 0, processing_started_at = NULL, heartbeat_at = NULL,
                claimed_by = NULL, updated_at = :now
            WHERE id = :id AND status = 'processing' AND claimed_by = :token
              AND :retry_count <= max_retries
            RETURNING *
            """,
            {
                "id": event_id,
                "token": token,
                "retry_count": retry_count,
                "error": error_message,
                "scheduled_at": scheduled_at,
                "now": now,
            },
        )

    async def fail(self, event_id: str, token: str, error_message: str, now: float) -> Event | None:
        """Terminally fail a claimed row. None if the claim was lost."""
        return await self._update_one(
            """
            UPDATE system_events
            SET status = 'failed', error_message = :error, completed_at = :now,
                claimed_by = NULL, updated_at = :now
            WHERE id = :id AND status = 'processing' AND claimed_by = :token
            RETURNING *
            """,
            {"id": event_id, "token": token, "error": error_message, "now": now},
        )

    async def update_progress(
        self, event_id: str, token: str, progress: int, now: float
    ) -> Event | None:
        """Raise progress of a claimed row and renew its heartbeat. None if not higher or the claim was lost."""
        return await self._update_one(
            """
            UPDATE system_events
            SET progress = :progress, heartbeat_at = :now, updated_at = :now
            WHERE id = :id AND status = 'processing' AND claimed_by = :token
              AND progress < :progress
            RETURNING *
            """,
            {"id": event_id, "token": token, "progress": progress, "now": now},
        )

    async def heartbeat(self, event_id: str, token: str, now: float) -> bool:
        """Mark a claimed row as alive so stale recovery leaves it alone. False if the claim was lost."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE system_events SET heartbeat_at = :now
                WHERE id = :id AND status = 'processing' AND claimed_by = :token
                """,
                {"id": event_id, "token": token, "now": now},
            )
            return cursor.rowcount > 0

    async def reset_failed(self, event_id: str, now: float) -> Event | None:
        """Manual retry: failed -> pending with a fresh budget."""
        return await self._update_one(
            """
            UPDATE system_events
            SET status = 'pending', retry_count = 0, error_message = NULL, progress = 0,
                result = NULL, scheduled_at = :now, processing_started_at = NULL, heartbeat_at = NULL,
                completed_at = NULL, updated_at = :now
            WHERE id = :id AND status = 'failed'
            RETURNING *
            """,
            {"id": event_id, "now": now},
        )

    async def cancel_pending(self, event_id: str, now: float) -> Event | None:
        """pending -> cancelled. Claimed or finished rows are left alone."""
        return await self._update_one(
            """
            UPDATE system_events
            SET status = 'cancelled', completed_at = :now, updated_at = :now
            WHERE id = :id AND status = 'pending'
            RETURNING *
            """,
            {"id": event_id, "now": now},
        )

    async def fetch_all(self, sql: str, params: Any = ()) -> list[aiosqlite.Row]:
        """Run a read-only query; errors wrapped as PersistenceError."""
        async with self._lock:
            conn = await self.ensure_conn()
            try:
                cursor = await conn.execute(sql, params)
                return list(await cursor.fetchall())
            except aiosqlite.Error as e:
                raise PersistenceError(str(e)) from e
