"""SQLite persistence for generation runs, backed by aiosqlite.

Two tables:
    generation_runs: one row per run, with the terminal RunSnapshot as JSON
    run_metrics: token usage, call counts and duration per finished run

Only ``init()`` raises. Every other method logs and swallows database
errors so a broken store never takes a running generation down with it;
reads fall back to None or an empty list.

Usage:
    >>> store = RunStore("./data/generations.db")
    >>> await store.init()
    >>> await store.save_run("run_abc123", "proj_1", "SAAS", "pending")
"""

import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import RunSnapshot

logger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS generation_runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    user_id TEXT,
    template TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    error_summary TEXT,
    snapshot TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS run_metrics (
    run_id TEXT PRIMARY KEY REFERENCES generation_runs(id),
    total_tokens INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    llm_calls INTEGER NOT NULL DEFAULT 0,
    retries INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_generation_runs_project
    ON generation_runs(project_id, created_at DESC);
"""

_RUN_COLUMNS = (
    "id, project_id, user_id, template, status, progress, "
    "error_summary, created_at, updated_at"
)

_METRIC_FIELDS = ("total_tokens", "input_tokens", "output_tokens", "llm_calls", "retries", "duration_ms")


class RunStore:
    """Async store for run records, final snapshots and run metrics.

    Attributes:
        db_path: SQLite file; parent directories are created by ``init()``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the schema. Raises if the database cannot be opened."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executescript(_SCHEMA)
                await db.commit()
        except Exception as e:
            logger.error("run_store_init_failed", db_path=self.db_path, error=str(e))
            raise
        logger.info("run_store_initialized", db_path=self.db_path)

    async def _write(self, sql: str, params: Sequence[Any], event: str, **log_fields: Any) -> bool:
        """Run one write statement. Failures are logged as ``event`` and reported as False."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(sql, params)
                await db.commit()
        except Exception as e:
            logger.error(event, error=str(e), **log_fields)
            return False
        return True

    async def _fetch(
        self, sql: str, params: Sequence[Any], event: str, **log_fields: Any
    ) -> list[aiosqlite.Row] | None:
        """Run one query with ``aiosqlite.Row`` rows. Failures are logged and return None."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                return list(await cursor.fetchall())
        except Exception as e:
            logger.error(event, error=str(e), **log_fields)
            return None

    async def save_run(
        self,
        run_id: str,
        project_id: str,
        template: str,
        status: str,
        user_id: str | None = None,
        created_at: float | None = None,
    ) -> None:
        """Insert the record of a newly accepted run."""
        now = time.time()
        saved = await self._write(
            "INSERT INTO generation_runs "
            "(id, project_id, user_id, template, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (run_id, project_id, user_id, template, status, created_at or now, now),
            "run_save_failed",
            run_id=run_id,
        )
        if saved:
            logger.debug("run_saved", run_id=run_id, project_id=project_id)

    async def update_status(
        self,
        run_id: str,
        status: str,
        error_summary: str | None = None,
    ) -> None:
        await self._write(
            "UPDATE generation_runs SET status = ?, error_summary = ?, updated_at = ? WHERE id = ?",
            (status, error_summary, time.time(), run_id),
            "run_status_update_failed",
            run_id=run_id,
            status=status,
        )

    async def save_snapshot(self, snapshot: RunSnapshot) -> None:
        """Store a terminal snapshot along with the status columns it implies."""
        saved = await self._write(
            "UPDATE generation_runs "
            "SET status = ?, progress = ?, error_summary = ?, snapshot = ?, updated_at = ? "
            "WHERE id = ?",
            (
                snapshot.status.value,
                snapshot.progress,
                snapshot.error_summary,
                snapshot.model_dump_json(),
                time.time(),
                snapshot.run_id,
            ),
            "run_snapshot_save_failed",
            run_id=snapshot.run_id,
        )
        if saved:
            logger.info(
                "run_snapshot_saved",
                run_id=snapshot.run_id,
                status=snapshot.status.value,
                file_count=len(snapshot.files),
            )

    async def get_snapshot(self, run_id: str) -> RunSnapshot | None:
        """Stored snapshot of a finished run; None for unknown or unfinished runs."""
        rows = await self._fetch(
            "SELECT snapshot FROM generation_runs WHERE id = ?",
            (run_id,),
            "run_snapshot_load_failed",
            run_id=run_id,
        )
        if not rows or rows[0]["snapshot"] is None:
            return None
        try:
            return RunSnapshot.model_validate_json(rows[0]["snapshot"])
        except ValueError as e:
            logger.error("run_snapshot_corrupt", run_id=run_id, error=str(e))
            return None

    async def list_runs(
        self,
        project_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Run records, newest first, optionally for one project."""
        where = " WHERE project_id = ?" if project_id is not None else ""
        params = (project_id, limit) if project_id is not None else (limit,)
        rows = await self._fetch(
            f"SELECT {_RUN_COLUMNS} FROM generation_runs{where} ORDER BY created_at DESC LIMIT ?",
            params,
            "run_list_failed",
            project_id=project_id,
        )
        return [dict(row) for row in rows or []]

    async def save_metrics(self, run_id: str, metrics: dict[str, int]) -> None:
        """Write the run's metrics row, replacing any earlier one. Missing counters store 0."""
        values = [metrics.get(name, 0) for name in _METRIC_FIELDS]
        saved = await self._write(
            f"INSERT OR REPLACE INTO run_metrics (run_id, {', '.join(_METRIC_FIELDS)}, created_at) "
            f"VALUES ({', '.join('?' * (len(_METRIC_FIELDS) + 2))})",
            (run_id, *values, time.time()),
            "run_metrics_save_failed",
            run_id=run_id,
        )
        if saved:
            logger.debug("run_metrics_saved", run_id=run_id)

    async def get_metrics(self, run_id: str) -> dict[str, Any] | None:
        rows = await self._fetch(
            "SELECT * FROM run_metrics WHERE run_id = ?",
            (run_id,),
            "run_metrics_load_failed",
            run_id=run_id,
        )
        return dict(rows[0]) if rows else None
