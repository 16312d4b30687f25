"""MCP tools for querying the local run history (instant, no scraping)."""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite

from ..config import DB_PATH
from ..database.models import initialize_db
from ..database.repository import RunRepository


async def _get_repo(db_path: Path = DB_PATH) -> tuple[aiosqlite.Connection, RunRepository]:
    """Get a database connection and repository."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await initialize_db(db)
    return db, RunRepository(db)


async def list_runs(kind: str = "", status: str = "", limit: int = 25, db_path: Path = DB_PATH) -> str:
    """List recorded scrape runs, most recent first.

    Args:
        kind: "vehicles", "etc_csv", or "" for all.
        status: "running", "completed", "failed", or "" for all.
        limit: Max results to return (default 25).

    Returns:
        Readable list of runs.
    """
    db, repo = await _get_repo(db_path)
    try:
        runs = await repo.list_runs(kind=kind, status=status, limit=limit)

        if not runs:
            return "No scrape runs recorded yet."

        lines = [f"Found {len(runs)} runs:\n"]
        for run in runs:
            line = (
                f"#{run.id} {run.kind} [{run.status}] {run.account or '-'} "
                f"started {run.started_at}"
            )
            if run.status == "completed":
                line += f" | records: {run.record_count}, artifacts: {run.artifact_count}"
                if run.output_path:
                    line += f"\n   Output: {run.output_path}"
            elif run.status == "failed":
                line += f"\n   Error ({run.error_code}): {run.error}"
            lines.append(line)

        return "\n".join(lines)
    finally:
        await db.close()


async def get_run_stats(db_path: Path = DB_PATH) -> str:
    """Get statistics about recorded runs.

    Returns:
        JSON with totals, status/kind/error breakdowns and last success time.
    """
    db, repo = await _get_repo(db_path)
    try:
        stats = await repo.get_stats()
        return json.dumps(stats, indent=2)
    finally:
        await db.close()
