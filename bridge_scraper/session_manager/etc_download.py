"""ETC usage-statement CSV download."""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path
from typing import Optional
from uuid import uuid4

from ..config import DOM_STABLE_TIMEOUT, DOWNLOAD_DIR, DOWNLOAD_MIN_BYTES, DOWNLOAD_TIMEOUT, NETWORK_IDLE_TIMEOUT
from ..constants import (
    ETC_BASE,
    ETC_CSV_TEXTS,
    ETC_LOGIN_URL_PATTERNS,
    ETC_PAGE_FUNCTIONS,
    ETC_SEARCH_CONDITIONS_TEXT,
    ETC_SELECTORS,
    ETC_STATEMENT_TEXT,
)
from ..engine.downloads import DownloadWatcher, rename_with_prefix
from ..engine.errors import ElementNotFound, NoDataAvailable, ScraperError
from ..engine.idle import await_network_idle
from ..engine.surface import RemoteSurface
from ..engine.timing import SYSTEM_CLOCK, Clock, poll_until
from ..models.result import CsvDownloadResult
from ..models.session import EtcDownloadRequest
from .controller import LoginProfile, SessionController
from .page_checks import click, click_link_containing, link_texts

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

PAGE_SCRIPTS_TIMEOUT = 30.0
PAGE_SCRIPTS_INTERVAL = 1.0

PAGE_SCRIPTS_READY = " && ".join(f"typeof {name} === 'function'" for name in ETC_PAGE_FUNCTIONS)


def etc_profile() -> LoginProfile:
    # No post-login marker on this site: login is confirmed once the form is gone.
    return LoginProfile(
        name="etc",
        login_url=ETC_BASE,
        main_url=ETC_BASE,
        required_field=ETC_SELECTORS["user_id"],
        login_button=ETC_SELECTORS["login_button"],
        login_url_patterns=list(ETC_LOGIN_URL_PATTERNS),
        entry_link=ETC_SELECTORS["login_link"],
    )


class EtcCsvDownloader:
    """Logs into the ETC statement site and downloads the usage CSV."""

    def __init__(
        self,
        browser,
        download_dir: Path = DOWNLOAD_DIR,
        clock: Optional[Clock] = None,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        min_bytes: int = DOWNLOAD_MIN_BYTES,
        network_idle_timeout: float = NETWORK_IDLE_TIMEOUT,
        dom_stable_timeout: float = DOM_STABLE_TIMEOUT,
    ):
        self._browser = browser
        self._download_dir = Path(download_dir)
        self._clock = clock or SYSTEM_CLOCK
        self._download_timeout = download_timeout
        self._min_bytes = min_bytes
        self._network_idle_timeout = network_idle_timeout
        self._dom_stable_timeout = dom_stable_timeout

    async def download(self, request: EtcDownloadRequest) -> CsvDownloadResult:
        directory = Path(request.download_path or self._download_dir)
        # Concurrent downloads may share ``directory``; each one watches its own staging folder.
        staging = directory / f".{request.user_id}_{uuid4().hex}"
        staging.mkdir(parents=True, exist_ok=True)
        logger.info(f"[ETC] Starting CSV download for {request.account} into {directory}")

        try:
            csv_path = await self._download_into(request, staging)
            renamed = rename_with_prefix(csv_path, request.user_id, directory=directory)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"[ETC] CSV download complete: {renamed}")
        return CsvDownloadResult.from_path(renamed)

    async def _download_into(self, request: EtcDownloadRequest, directory: Path) -> Path:
        surface = await self._browser.open_surface(download_dir=directory)
        try:
            controller = SessionController(
                surface,
                etc_profile(),
                {ETC_SELECTORS["user_id"]: request.user_id, ETC_SELECTORS["password"]: request.password},
                account=request.account,
                clock=self._clock,
                network_idle_timeout=self._network_idle_timeout,
                dom_stable_timeout=self._dom_stable_timeout,
            )
            await controller.load_login_form()
            await controller.submit_and_confirm()
            logger.info("[ETC] Login complete")

            await self._open_search_results(surface)

            watcher = DownloadWatcher(
                directory, final_extensions=(".csv",), min_bytes=self._min_bytes, clock=self._clock
            )

            async def _click_csv_link():
                logger.debug(f"[ETC] Result page links: {await link_texts(surface)}")
                if not await click_link_containing(surface, ETC_STATEMENT_TEXT, any_of=tuple(ETC_CSV_TEXTS)):
                    raise NoDataAvailable("no statement CSV link on the result page", phase="etc_download")
                logger.info("[ETC] CSV link clicked")

            return await watcher.trigger_and_await(
                _click_csv_link, timeout=self._download_timeout, expected_extension=".csv"
            )
        finally:
            await self._browser.close_surface(surface)

    async def _open_search_results(self, surface: RemoteSurface):
        logger.debug(f"[ETC] Links after login: {await link_texts(surface)}")

        clicked = await click_link_containing(surface, ETC_SEARCH_CONDITIONS_TEXT)
        logger.debug(f"[ETC] Search conditions link clicked: {clicked}")
        await self._idle(surface)

        await click(surface, ETC_SELECTORS["all_option"])
        await click(surface, ETC_SELECTORS["save_button"])
        await self._idle(surface)

        if not await click(surface, ETC_SELECTORS["search_button"]):
            raise ElementNotFound(
                f"search button {ETC_SELECTORS['search_button']}", phase="etc_search"
            )
        await self._idle(surface)

        async def _scripts_ready() -> bool:
            return bool(await surface.evaluate(PAGE_SCRIPTS_READY))

        if not await poll_until(
            _scripts_ready, timeout=PAGE_SCRIPTS_TIMEOUT, interval=PAGE_SCRIPTS_INTERVAL, clock=self._clock
        ):
            logger.warning("[ETC] Result page scripts not loaded, proceeding anyway...")

    async def _idle(self, surface: RemoteSurface):
        await await_network_idle(surface, timeout=self._network_idle_timeout, clock=self._clock)

    async def download_many(
        self, requests: list[EtcDownloadRequest]
    ) -> list[tuple[str, Optional[CsvDownloadResult], Optional[ScraperError]]]:
        """Accounts run one after another, each on its own context."""
        outcomes = []
        for index, request in enumerate(requests, start=1):
            logger.info(f"[ETC] Account {index}/{len(requests)}: {request.account}")
            try:
                outcomes.append((request.account, await self.download(request), None))
            except ScraperError as e:
                logger.error(f"[ETC] Download failed for {request.account}: {e}")
                outcomes.append((request.account, None, e))
        return outcomes
