"""Async repository for scrape runs and saved session cookies."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from ..models.result import ScrapeRun
from ..models.session import SavedCookie

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class RunRepository:
    """Async repository for run history and cookie replay in SQLite."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def start_run(self, kind: str, account: str = "") -> int:
        """Record a new running scrape and return its id."""
        async with self._db.execute(
            "INSERT INTO scrape_runs (kind, account, status, started_at) VALUES (?, ?, 'running', ?)",
            (kind, account, datetime.utcnow().isoformat()),
        ) as cursor:
            run_id = cursor.lastrowid
        await self._db.commit()
        return run_id

    async def finish_run(
        self,
        run_id: int,
        session_id: str = "",
        record_count: int = 0,
        artifact_count: int = 0,
        output_path: str = "",
    ):
        await self._db.execute(
            """
            UPDATE scrape_runs
            SET status = 'completed', session_id = ?, record_count = ?, artifact_count = ?,
                output_path = ?, completed_at = ?
            WHERE id = ?
            """,
            (session_id, record_count, artifact_count, output_path, datetime.utcnow().isoformat(), run_id),
        )
        await self._db.commit()

    async def fail_run(self, run_id: int, error_code: str, error: str):
        await self._db.execute(
            """
            UPDATE scrape_runs
            SET status = 'failed', error_code = ?, error = ?, completed_at = ?
            WHERE id = ?
            """,
            (error_code, error, datetime.utcnow().isoformat(), run_id),
        )
        await self._db.commit()

    async def get_run(self, run_id: int) -> Optional[ScrapeRun]:
        async with self._db.execute("SELECT * FROM scrape_runs WHERE id = ?", (run_id,)) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_run(row, cursor.description)
        return None

    async def list_runs(self, kind: str = "", status: str = "", limit: int = 25) -> list[ScrapeRun]:
        """Most recent runs first, optionally filtered."""
        conditions = []
        params = []

        if kind:
            conditions.append("kind = ?")
            params.append(kind)

        if status:
            conditions.append("status = ?")
            params.append(status)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM scrape_runs {where} ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_run(row, cursor.description) for row in rows]

    async def get_stats(self) -> dict:
        """Aggregate statistics across recorded runs."""
        stats = {}

        async with self._db.execute("SELECT COUNT(*) FROM scrape_runs") as cursor:
            stats["total_runs"] = (await cursor.fetchone())[0]

        async with self._db.execute(
            "SELECT status, COUNT(*) FROM scrape_runs GROUP BY status"
        ) as cursor:
            stats["status_breakdown"] = {row[0]: row[1] async for row in cursor}

        async with self._db.execute(
            "SELECT kind, COUNT(*) FROM scrape_runs GROUP BY kind"
        ) as cursor:
            stats["kind_breakdown"] = {row[0]: row[1] async for row in cursor}

        async with self._db.execute(
            "SELECT COALESCE(SUM(record_count), 0) FROM scrape_runs WHERE status = 'completed'"
        ) as cursor:
            stats["total_records"] = (await cursor.fetchone())[0]

        async with self._db.execute(
            "SELECT error_code, COUNT(*) FROM scrape_runs WHERE status = 'failed' GROUP BY error_code"
        ) as cursor:
            stats["error_breakdown"] = {row[0]: row[1] async for row in cursor}

        async with self._db.execute(
            "SELECT MAX(completed_at) FROM scrape_runs WHERE status = 'completed'"
        ) as cursor:
            row = await cursor.fetchone()
            stats["last_success_time"] = row[0] if row[0] else None

        return stats

    async def get_run_count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM scrape_runs") as cursor:
            return (await cursor.fetchone())[0]

    async def save_cookies(self, account: str, cookies: list[SavedCookie]):
        """Replace the saved cookie set for ``account``."""
        saved_at = datetime.utcnow().isoformat()
        await self._db.execute("DELETE FROM session_cookies WHERE account = ?", (account,))
        await self._db.executemany(
            """
            INSERT OR REPLACE INTO session_cookies (account, name, value, domain, path, saved_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [(account, c.name, c.value, c.domain, c.path, saved_at) for c in cookies],
        )
        await self._db.commit()
        logger.info(f"Saved {len(cookies)} cookies for {account}")

    async def load_cookies(self, account: str, max_age_seconds: int = 0) -> list[SavedCookie]:
        """Cookies saved for ``account``; older than ``max_age_seconds`` are ignored (0 = no limit)."""
        query = "SELECT name, value, domain, path FROM session_cookies WHERE account = ?"
        params: list = [account]
        if max_age_seconds > 0:
            cutoff = (datetime.utcnow() - timedelta(seconds=max_age_seconds)).isoformat()
            query += " AND saved_at >= ?"
            params.append(cutoff)

        async with self._db.execute(query, params) as cursor:
            return [
                SavedCookie(name=row[0], value=row[1], domain=row[2], path=row[3] or "/")
                async for row in cursor
            ]

    def _row_to_run(self, row: tuple, description) -> ScrapeRun:
        """Convert a database row to a ScrapeRun model."""
        col_names = [d[0] for d in description]
        data = dict(zip(col_names, row))
        for key in ("account", "session_id", "output_path", "error_code", "error"):
            if data.get(key) is None:
                data[key] = ""
        return ScrapeRun(**data)
