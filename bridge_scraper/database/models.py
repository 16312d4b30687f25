"""SQLite database schema and initialization."""

from __future__ import annotations

import aiosqlite

SCHEMA = """
CREATE TABLE IF NOT EXISTS scrape_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    account TEXT DEFAULT '',
    session_id TEXT DEFAULT '',
    status TEXT DEFAULT 'running',
    record_count INTEGER DEFAULT 0,
    artifact_count INTEGER DEFAULT 0,
    output_path TEXT DEFAULT '',
    error_code TEXT DEFAULT '',
    error TEXT DEFAULT '',
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS session_cookies (
    account TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    domain TEXT NOT NULL,
    path TEXT DEFAULT '/',
    saved_at TEXT NOT NULL,
    PRIMARY KEY (account, name, domain, path)
);

CREATE INDEX IF NOT EXISTS idx_runs_kind ON scrape_runs(kind);
CREATE INDEX IF NOT EXISTS idx_runs_started ON scrape_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_cookies_account ON session_cookies(account);
"""


async def initialize_db(db: aiosqlite.Connection):
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA)
    await db.commit()
