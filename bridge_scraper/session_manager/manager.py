"""Session Manager HTTP service.

Runs as a lightweight local web server that bridges the MCP server
to the browser. Owns the browser process, the run history and the
saved session cookies.

Endpoints:
    GET  /status           - Service state and counters
    POST /scrape/vehicles  - Vehicle monitoring scrape (with video enrichment)
    POST /scrape/etc-csv   - ETC usage-statement CSV download (one or many accounts)
    GET  /runs             - Recent runs, filterable by kind and status
    GET  /runs/stats       - Aggregate run statistics
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite
from aiohttp import web
from pydantic import ValidationError

from ..config import (
    DATA_DIR,
    DB_PATH,
    DOWNLOAD_DIR,
    FORWARD_ORGANIZATION_ID,
    FORWARD_URL,
    SESSION_MANAGER_HOST,
    SESSION_MANAGER_PORT,
    SESSION_TTL_SECONDS,
    ensure_dirs,
)
from ..database.models import initialize_db
from ..database.repository import RunRepository
from ..engine.errors import (
    BrowserInitFailed,
    DownloadTimedOut,
    ElementNotFound,
    ExtractionFailed,
    LoginFailed,
    NoDataAvailable,
    RemoteCallTimedOut,
    RetriesExhausted,
    ScraperError,
    SessionExpired,
)
from ..models.session import EtcDownloadRequest, ScrapeRequest, ServiceStatus
from .browser import BrowserSession
from .etc_download import EtcCsvDownloader
from .forwarder import Forwarder
from .pipeline import ExtractionPipeline, scrape_with_retry

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

ERROR_STATUS = [
    (RetriesExhausted, 502),
    (BrowserInitFailed, 503),
    (LoginFailed, 401),
    (SessionExpired, 401),
    (NoDataAvailable, 404),
    (ElementNotFound, 422),
    (ExtractionFailed, 422),
    (DownloadTimedOut, 504),
    (RemoteCallTimedOut, 504),
]


def status_for(error: ScraperError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 502 if error.retryable else 500


def error_response(error: ScraperError) -> web.Response:
    return web.json_response(error.to_dict(), status=status_for(error))


class SessionManager:
    """Orchestrates browser sessions and scraping operations."""

    def __init__(
        self,
        db_path: Path = DB_PATH,
        browser: Optional[BrowserSession] = None,
        data_dir: Path = DATA_DIR,
        download_dir: Path = DOWNLOAD_DIR,
    ):
        self.browser = browser or BrowserSession()
        self.db_path = db_path
        self.data_dir = data_dir
        self.download_dir = download_dir
        self.db: aiosqlite.Connection | None = None
        self.repo: RunRepository | None = None
        self.active_scrapes = 0
        self._last_scrape_time: str | None = None
        self._last_error: str | None = None

    async def setup(self):
        """Initialize database connection."""
        for directory in (self.data_dir, self.download_dir, Path(self.db_path).parent):
            Path(directory).mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row
        await initialize_db(self.db)
        self.repo = RunRepository(self.db)

    async def cleanup(self):
        """Clean up resources."""
        await self.browser.stop()
        if self.db:
            await self.db.close()

    def _browser_for(self, headless: Optional[bool]) -> tuple[BrowserSession, bool]:
        """Shared browser, or a dedicated one when the request overrides headless mode."""
        if headless is None or headless == self.browser.headless:
            return self.browser, False
        return BrowserSession(engine=self.browser.engine, headless=headless), True

    def _default_forwarder(self) -> Optional[Forwarder]:
        if not FORWARD_URL:
            return None
        return Forwarder(FORWARD_URL, FORWARD_ORGANIZATION_ID)

    async def scrape_vehicles(self, params: ScrapeRequest) -> dict:
        run_id = await self.repo.start_run("vehicles", params.account)
        browser, owned = self._browser_for(params.headless)
        self.active_scrapes += 1
        try:
            cookies = await self.repo.load_cookies(params.account, SESSION_TTL_SECONDS)
            logger.info(f"[SCRAPE] {params.account}: {len(cookies)} saved cookies available")
            pipeline = ExtractionPipeline(browser, forwarder=self._default_forwarder(), data_dir=self.data_dir)
            result = await scrape_with_retry(pipeline, params, cookies=cookies, force_login=params.force_login)
        except Exception as e:
            self._last_error = str(e)
            code = e.code if isinstance(e, ScraperError) else ScraperError.code
            await self.repo.fail_run(run_id, code, str(e))
            raise
        finally:
            self.active_scrapes -= 1
            if owned:
                await browser.stop()

        if pipeline.last_cookies:
            await self.repo.save_cookies(params.account, pipeline.last_cookies)
        await self.repo.finish_run(
            run_id,
            session_id=result.session_id,
            record_count=len(result.records),
            artifact_count=len(result.side_artifacts),
            output_path=result.raw_path or "",
        )
        self._last_scrape_time = datetime.utcnow().isoformat()
        self._last_error = None

        payload = result.model_dump(mode="json", by_alias=True, exclude={"raw_payload"})
        payload["run_id"] = run_id
        payload["count"] = len(result.records)
        return payload

    async def download_etc_csv(self, params: EtcDownloadRequest) -> dict:
        run_id = await self.repo.start_run("etc_csv", params.account)
        browser, owned = self._browser_for(params.headless)
        self.active_scrapes += 1
        try:
            result = await EtcCsvDownloader(browser, download_dir=self.download_dir).download(params)
        except Exception as e:
            self._last_error = str(e)
            code = e.code if isinstance(e, ScraperError) else ScraperError.code
            await self.repo.fail_run(run_id, code, str(e))
            raise
        finally:
            self.active_scrapes -= 1
            if owned:
                await browser.stop()

        await self.repo.finish_run(
            run_id, record_count=1, artifact_count=1, output_path=str(result.csv_path)
        )
        self._last_scrape_time = datetime.utcnow().isoformat()
        self._last_error = None
        return {"run_id": run_id, "account": params.account, **result.model_dump(mode="json")}

    async def status(self) -> ServiceStatus:
        runs = await self.repo.get_run_count() if self.repo else 0
        if self.active_scrapes:
            state = "scraping"
        elif self._last_error:
            state = "error"
        else:
            state = "idle"
        return ServiceStatus(
            state=state,
            active_scrapes=self.active_scrapes,
            runs_recorded=runs,
            last_scrape_time=self._last_scrape_time,
            last_error=self._last_error,
            message=f"browser {'running' if self.browser.is_running else 'not running'} ({self.browser.engine})",
        )


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def _json_body(request: web.Request) -> dict:
    return await request.json() if request.content_length else {}


async def handle_status(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    status = await mgr.status()
    return web.json_response(status.model_dump())


async def handle_scrape_vehicles(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)

    try:
        params = ScrapeRequest(**body)
    except ValidationError as e:
        return web.json_response({"error": f"Invalid params: {e}"}, status=400)

    try:
        return web.json_response(await mgr.scrape_vehicles(params))
    except ScraperError as e:
        logger.error(f"[SCRAPE] Vehicle scrape failed for {params.account}: {e}")
        return error_response(e)
    except Exception as e:
        logger.error(f"Vehicle scrape failed: {e}", exc_info=True)
        return web.json_response({"error": str(e)}, status=500)


async def handle_scrape_etc_csv(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)

    try:
        if "accounts" in body:
            accounts = [EtcDownloadRequest(**a) for a in body["accounts"]]
        else:
            accounts = [EtcDownloadRequest(**body)]
    except (ValidationError, TypeError) as e:
        return web.json_response({"error": f"Invalid params: {e}"}, status=400)

    if "accounts" not in body:
        try:
            return web.json_response(await mgr.download_etc_csv(accounts[0]))
        except ScraperError as e:
            logger.error(f"[ETC] CSV download failed for {accounts[0].account}: {e}")
            return error_response(e)
        except Exception as e:
            logger.error(f"ETC download failed: {e}", exc_info=True)
            return web.json_response({"error": str(e)}, status=500)

    # Accounts run one after another; one failure does not stop the rest.
    results = []
    for params in accounts:
        try:
            results.append(await mgr.download_etc_csv(params))
        except ScraperError as e:
            logger.error(f"[ETC] CSV download failed for {params.account}: {e}")
            results.append({"account": params.account, "error": str(e), "code": e.code})
    return web.json_response({"results": results, "count": len(results)})


async def handle_list_runs(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    try:
        limit = int(request.query.get("limit", "25"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer."}, status=400)

    runs = await mgr.repo.list_runs(
        kind=request.query.get("kind", ""),
        status=request.query.get("status", ""),
        limit=limit,
    )
    return web.json_response({"runs": [r.model_dump() for r in runs], "count": len(runs)})


async def handle_run_stats(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    return web.json_response(await mgr.repo.get_stats())


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    mgr = app.get("manager") or SessionManager()
    await mgr.setup()
    app["manager"] = mgr
    logger.info(f"Session Manager started on {SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}")


async def on_cleanup(app: web.Application):
    mgr: SessionManager = app["manager"]
    await mgr.cleanup()
    logger.info("Session Manager stopped.")


def create_app(manager: Optional[SessionManager] = None) -> web.Application:
    app = web.Application()
    if manager is not None:
        app["manager"] = manager
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/status", handle_status)
    app.router.add_post("/scrape/vehicles", handle_scrape_vehicles)
    app.router.add_post("/scrape/etc-csv", handle_scrape_etc_csv)
    app.router.add_get("/runs", handle_list_runs)
    app.router.add_get("/runs/stats", handle_run_stats)

    return app


def main():
    """Run the session manager as a standalone HTTP service."""
    ensure_dirs()
    app = create_app()
    web.run_app(app, host=SESSION_MANAGER_HOST, port=SESSION_MANAGER_PORT)


if __name__ == "__main__":
    main()
