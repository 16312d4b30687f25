"""Vehicle data extraction: session, bridged fetch, persistence, forwarding, enrichment."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..config import (
    BRIDGE_POLL_INTERVAL,
    BRIDGE_TIMEOUT,
    BROWSER_DEBUG,
    DATA_DIR,
    DOM_STABLE_TIMEOUT,
    NETWORK_IDLE_TIMEOUT,
    SCRAPER_INITIAL_BACKOFF_MS,
    SCRAPER_MAX_RETRIES,
    SCRAPER_RETRY_JITTER,
)
from ..constants import (
    VEHICLE_STATE_BINDING,
    VENUS_COOKIE_DOMAIN,
    VENUS_LOGIN_URL,
    VENUS_LOGIN_URL_PATTERNS,
    VENUS_MAIN_URL,
    VENUS_SELECTORS,
    VENUS_SERVICE,
)
from ..engine.bridge import AsyncBridge
from ..engine.errors import ExtractionFailed, ScraperError
from ..engine.idle import await_dom_stable, await_network_idle
from ..engine.retry import RetryExecutor
from ..engine.surface import RemoteSurface
from ..engine.timing import SYSTEM_CLOCK, Clock, poll_until
from ..models.result import ExtractionResult, ForwardResponse
from ..models.session import SavedCookie, ScrapeRequest
from ..models.vehicle import VideoNotificationResult, parse_vehicle_records
from .controller import LoginProfile, SessionController, binding_ready_script
from .forwarder import Forwarder
from .page_checks import element_exists
from .video import VideoEnricher

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

JST = timezone(timedelta(hours=9))

SERVICE_WAIT_TIMEOUT = 30.0
GRID_WAIT_TIMEOUT = 30.0
LOADING_WAIT_TIMEOUT = 30.0
PAGE_CHECK_INTERVAL = 1.0

LOADING_VISIBLE_SCRIPT = f"""
(() => {{
    const elems = document.querySelectorAll({json.dumps(VENUS_SELECTORS["loading"])});
    return Array.from(elems).some(elem => {{
        const style = window.getComputedStyle(elem);
        const rect = elem.getBoundingClientRect();
        return style.display !== 'none' &&
               style.visibility !== 'hidden' &&
               style.opacity !== '0' &&
               (rect.width > 0 || rect.height > 0);
    }});
}})()
"""


def venus_profile() -> LoginProfile:
    return LoginProfile(
        name="venus",
        login_url=VENUS_LOGIN_URL,
        main_url=VENUS_MAIN_URL,
        required_field=VENUS_SELECTORS["company_id"],
        login_button=VENUS_SELECTORS["login_button"],
        login_url_patterns=list(VENUS_LOGIN_URL_PATTERNS),
        marker=VENUS_SELECTORS["home_button"],
        click_marker=True,
        popup=VENUS_SELECTORS["popup"],
        readiness_binding=VENUS_SERVICE,
        cookie_domain=VENUS_COOKIE_DOMAIN,
    )


def venus_credentials(request: ScrapeRequest) -> dict[str, str]:
    return {
        VENUS_SELECTORS["company_id"]: request.comp_id,
        VENUS_SELECTORS["user_name"]: request.user_name,
        VENUS_SELECTORS["password"]: request.user_pass,
    }


def save_raw_payload(raw_data, data_dir: Path) -> Optional[Path]:
    """Write the raw payload to ``vehicles_<JST timestamp>.json``. Best-effort."""
    timestamp = datetime.now(JST).strftime("%Y%m%d_%H%M%S")
    path = Path(data_dir) / f"vehicles_{timestamp}.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(raw_data, ensure_ascii=False, indent=2), encoding="utf-8")
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"[EXTRACT] Failed to save vehicle data: {e}")
        return None
    logger.info(f"[EXTRACT] Saved vehicle data to {path}")
    return path


class ExtractionPipeline:
    """One vehicle-data scrape on a fresh page.

    ``browser`` provides ``open_surface(cookies=...)``, ``export_cookies`` and
    ``close_surface``; BrowserSession is the production implementation.
    """

    def __init__(
        self,
        browser,
        forwarder: Optional[Forwarder] = None,
        data_dir: Path = DATA_DIR,
        clock: Optional[Clock] = None,
        bridge_timeout: float = BRIDGE_TIMEOUT,
        bridge_poll_interval: float = BRIDGE_POLL_INTERVAL,
        network_idle_timeout: float = NETWORK_IDLE_TIMEOUT,
        dom_stable_timeout: float = DOM_STABLE_TIMEOUT,
        max_retries: int = SCRAPER_MAX_RETRIES,
        initial_backoff_ms: int = SCRAPER_INITIAL_BACKOFF_MS,
    ):
        self._browser = browser
        self._forwarder = forwarder
        self._data_dir = data_dir
        self._clock = clock or SYSTEM_CLOCK
        self._bridge_timeout = bridge_timeout
        self._bridge_poll_interval = bridge_poll_interval
        self._network_idle_timeout = network_idle_timeout
        self._dom_stable_timeout = dom_stable_timeout
        self._max_retries = max_retries
        self._initial_backoff_ms = initial_backoff_ms
        self.last_cookies: list[SavedCookie] = []

    async def run(
        self,
        request: ScrapeRequest,
        cookies: Optional[list[SavedCookie]] = None,
        force_login: bool = False,
    ) -> ExtractionResult:
        logger.info(f"[EXTRACT] Starting vehicle scrape for {request.account}")
        restore = None if force_login else cookies
        surface = await self._browser.open_surface(cookies=restore)

        try:
            controller = SessionController(
                surface,
                venus_profile(),
                venus_credentials(request),
                account=request.account,
                clock=self._clock,
                network_idle_timeout=self._network_idle_timeout,
                dom_stable_timeout=self._dom_stable_timeout,
                debug=request.debug or BROWSER_DEBUG,
            )
            session_id = await self._open_session(controller)

            bridge = AsyncBridge(
                surface,
                clock=self._clock,
                poll_interval=self._bridge_poll_interval,
                default_timeout=self._bridge_timeout,
            )
            raw_data = await self._fetch_vehicles(surface, bridge, request)
            records = parse_vehicle_records(raw_data)
            logger.info(f"[EXTRACT] Extracted {len(records)} vehicles")

            logger.info("[EXTRACT] Waiting for page to stabilize after vehicle data extraction...")
            await await_network_idle(surface, timeout=self._network_idle_timeout, clock=self._clock)
            await await_dom_stable(surface, timeout=self._dom_stable_timeout, clock=self._clock)

            raw_path = save_raw_payload(raw_data, self._data_dir)
            forward_response = await self._forward(raw_data, request)

            side_artifacts: list[VideoNotificationResult] = []
            if request.include_videos:
                side_artifacts = await self._enrich(bridge)

            self.last_cookies = await self._browser.export_cookies(surface)
        finally:
            await self._browser.close_surface(surface)

        return ExtractionResult(
            records=tuple(records),
            raw_payload=raw_data,
            session_id=session_id,
            forward_response=forward_response,
            side_artifacts=tuple(side_artifacts),
            raw_path=str(raw_path) if raw_path else None,
        )

    async def _open_session(self, controller: SessionController) -> str:
        try:
            await controller.open_main_page()
            logger.info("[EXTRACT] Navigation successful without login")
            return f"session_{int(time.time())}"
        except ScraperError as e:
            logger.info(f"[EXTRACT] First navigation failed, attempting login: {e}")
        session = await controller.establish()
        return session.session_id

    async def _fetch_vehicles(self, surface: RemoteSurface, bridge: AsyncBridge, request: ScrapeRequest) -> list:
        async def _service_ready() -> bool:
            return bool(await surface.evaluate(binding_ready_script(VEHICLE_STATE_BINDING)))

        if not await poll_until(
            _service_ready, timeout=SERVICE_WAIT_TIMEOUT, interval=PAGE_CHECK_INTERVAL, clock=self._clock
        ):
            raise ExtractionFailed(
                f"{VEHICLE_STATE_BINDING} not found after {SERVICE_WAIT_TIMEOUT:.0f}s", phase="extract"
            )

        await await_dom_stable(surface, timeout=self._dom_stable_timeout, clock=self._clock)

        if await poll_until(
            lambda: element_exists(surface, VENUS_SELECTORS["vehicle_grid"]),
            timeout=GRID_WAIT_TIMEOUT,
            interval=PAGE_CHECK_INTERVAL,
            clock=self._clock,
        ):
            logger.info("[EXTRACT] Venus main grid detected")
        else:
            logger.warning("[EXTRACT] Vehicle grid not detected, proceeding anyway...")

        async def _loading_cleared() -> bool:
            return not await surface.evaluate(LOADING_VISIBLE_SCRIPT)

        if not await poll_until(
            _loading_cleared, timeout=LOADING_WAIT_TIMEOUT, interval=PAGE_CHECK_INTERVAL, clock=self._clock
        ):
            logger.warning("[EXTRACT] Loading message timeout, proceeding anyway...")

        logger.info(
            f"[EXTRACT] Calling {VEHICLE_STATE_BINDING} with branchID='{request.branch_id}', "
            f"filterID='{request.filter_id}'"
        )
        result = await bridge.call(VEHICLE_STATE_BINDING, request.branch_id, request.filter_id)
        payload = result.json_arg(0)
        if not isinstance(payload, list):
            raise ExtractionFailed(
                f"expected a JSON array of vehicles, got {type(payload).__name__}", phase="extract"
            )
        return payload

    async def _forward(self, raw_data: list, request: ScrapeRequest) -> Optional[ForwardResponse]:
        forwarder = self._forwarder
        if request.forward_url:
            forwarder = Forwarder(request.forward_url, request.organization_id or "")
        if forwarder is None:
            return None

        executor = RetryExecutor(
            max_retries=self._max_retries,
            initial_backoff_ms=self._initial_backoff_ms,
            jitter_ratio=SCRAPER_RETRY_JITTER,
            clock=self._clock,
            label="forward",
        )
        try:
            return await executor.execute(lambda: forwarder.send(raw_data))
        except ScraperError as e:
            logger.warning(f"[FORWARD] Failed to forward vehicle data: {e}")
            return None

    async def _enrich(self, bridge: AsyncBridge) -> list[VideoNotificationResult]:
        try:
            return await VideoEnricher(bridge).process()
        except ScraperError as e:
            logger.warning(f"[DVR] Video notification processing failed: {e}")
            return []


async def scrape_with_retry(
    pipeline: ExtractionPipeline,
    request: ScrapeRequest,
    cookies: Optional[list[SavedCookie]] = None,
    force_login: bool = False,
    clock: Optional[Clock] = None,
) -> ExtractionResult:
    """Run the whole scrape under the retry policy."""
    executor = RetryExecutor(
        max_retries=SCRAPER_MAX_RETRIES,
        initial_backoff_ms=SCRAPER_INITIAL_BACKOFF_MS,
        jitter_ratio=SCRAPER_RETRY_JITTER,
        clock=clock,
        label="vehicle_scrape",
    )
    return await executor.execute(lambda: pipeline.run(request, cookies=cookies, force_login=force_login))
