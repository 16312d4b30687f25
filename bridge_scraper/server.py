"""MCP Server entry point for the bridge scraper.

Exposes 5 tools via the Model Context Protocol:
- Service: service_status
- Scraping: scrape_vehicles, download_etc_csv
- Query: list_runs, get_run_stats

The Session Manager HTTP service (aiohttp on localhost:8025) is auto-started
as part of the MCP server lifecycle, no separate process needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import SESSION_MANAGER_HOST, SESSION_MANAGER_PORT, ensure_dirs
from .tools.query_tools import get_run_stats, list_runs
from .tools.scraping_tools import download_etc_csv, scrape_vehicles
from .tools.session_tools import service_status

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("bridge-scraper")

# Ensure data directories exist
ensure_dirs()


# ── Lifespan: auto-start Session Manager ─────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the Session Manager HTTP service alongside the MCP server."""
    from .session_manager.manager import create_app

    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, SESSION_MANAGER_HOST, SESSION_MANAGER_PORT)
    managed = False
    try:
        await site.start()
        logger.info(
            "Session Manager auto-started on %s:%s", SESSION_MANAGER_HOST, SESSION_MANAGER_PORT
        )
        managed = True
    except OSError:
        # Port already in use: assume Session Manager was started manually
        logger.info(
            "Session Manager already running on %s:%s", SESSION_MANAGER_HOST, SESSION_MANAGER_PORT
        )
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Session Manager stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "bridge-scraper",
    lifespan=lifespan,
    instructions=(
        "Bridge Scraper - Tools to pull vehicle monitoring data and ETC usage statements "
        "from browser-only web applications. The Session Manager starts automatically "
        "with this server. Use scrape_vehicles for the vehicle state table (with video "
        "notifications) and download_etc_csv for usage-statement CSVs. "
        "Use list_runs and get_run_stats to inspect previous runs."
    ),
)


# ── Service Tools ────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_service_status() -> str:
    """Check the Session Manager state.

    Returns: state, active scrapes, recorded runs, last scrape time, last error.
    """
    return await service_status()


# ── Scraping Tools ───────────────────────────────────────────────────────────


@mcp.tool()
async def tool_scrape_vehicles(
    comp_id: str,
    user_name: str,
    user_pass: str,
    branch_id: str = "",
    filter_id: str = "",
    force_login: bool = False,
    include_videos: bool = True,
) -> str:
    """Scrape the vehicle state table.

    Logs in when saved cookies no longer work, fetches every vehicle through
    the page's own service binding, and resolves ready video notifications.

    Args:
        comp_id: Company ID.
        user_name: User name.
        user_pass: Password.
        branch_id: Branch filter (default all branches).
        filter_id: Vehicle filter (default none).
        force_login: Ignore saved cookies and log in again.
        include_videos: Resolve mp4 URLs for video notifications.
    """
    return await scrape_vehicles(
        comp_id, user_name, user_pass, branch_id, filter_id, force_login, include_videos
    )


@mcp.tool()
async def tool_download_etc_csv(user_id: str, password: str, download_path: str = "") -> str:
    """Download the ETC usage-statement CSV for one account.

    Args:
        user_id: ETC statement site login ID.
        password: Password.
        download_path: Target directory (default: the configured download dir).
    """
    return await download_etc_csv(user_id, password, download_path)


# ── Query Tools (instant, from local database) ──────────────────────────────


@mcp.tool()
async def tool_list_runs(kind: str = "", status: str = "", limit: int = 25) -> str:
    """List previous scrape runs, most recent first.

    Args:
        kind: "vehicles", "etc_csv", or "" for all.
        status: "running", "completed", "failed", or "" for all.
        limit: Max results (default 25).
    """
    return await list_runs(kind, status, limit)


@mcp.tool()
async def tool_get_run_stats() -> str:
    """Get statistics about recorded runs.

    Returns: totals, status/kind/error breakdowns, last successful run.
    """
    return await get_run_stats()


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting Bridge Scraper MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
