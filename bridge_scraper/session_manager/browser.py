"""Browser automation: launch, per-scrape contexts, cookies, event logging."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, async_playwright

from ..config import BROWSER_ENGINE, BROWSER_EXECUTABLE, BROWSER_HEADLESS, BROWSER_TIMEOUT
from ..engine.errors import BrowserInitFailed
from ..engine.surface import PlaywrightSurface
from ..models.session import SavedCookie

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

CHROMIUM_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-sandbox",
]


class BrowserSession:
    """Owns one browser process. Each scrape gets its own context and page."""

    def __init__(self, engine: Optional[str] = None, headless: Optional[bool] = None):
        self._engine = (engine or BROWSER_ENGINE).lower()
        self._headless = headless if headless is not None else BROWSER_HEADLESS
        self._camoufox = None
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._contexts: dict[int, BrowserContext] = {}
        self._event_tasks: set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    @property
    def engine(self) -> str:
        return self._engine

    @property
    def headless(self) -> bool:
        return self._headless

    async def start(self):
        """Launch the browser once, however many scrapes ask at the same time.

        Raises BrowserInitFailed.
        """
        async with self._start_lock:
            if self.is_running:
                return
            await self._launch()

    async def _launch(self):
        try:
            logger.info(f"Launching {self._engine} (headless={self._headless})...")
            if self._engine == "chromium":
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._headless,
                    executable_path=BROWSER_EXECUTABLE,
                    args=CHROMIUM_ARGS,
                )
            else:
                self._camoufox = AsyncCamoufox(
                    headless=self._headless,
                    humanize=True,
                    i_know_what_im_doing=True,
                    config={"forceScopeAccess": True},
                    disable_coop=True,
                )
                self._browser = await self._camoufox.__aenter__()

            self._browser.on("disconnected", lambda _: logger.warning("Browser disconnected."))
            logger.info("Browser initialized successfully")
        except Exception as e:
            logger.error(f"Failed to start browser: {e}")
            await self.stop()
            raise BrowserInitFailed(str(e), phase="browser_init") from e

    async def open_surface(
        self,
        download_dir: Optional[Path] = None,
        cookies: Optional[list[SavedCookie]] = None,
    ) -> PlaywrightSurface:
        """Create an isolated context + page and wrap it as a remote surface."""
        if not self.is_running:
            await self.start()

        try:
            context = await self._browser.new_context(
                viewport={"width": 1280, "height": 800},
                accept_downloads=True,
                locale="ja-JP",
            )
            page = await context.new_page()
            page.set_default_timeout(BROWSER_TIMEOUT)
        except PlaywrightError as e:
            raise BrowserInitFailed(f"could not open page: {e}", phase="browser_init") from e

        surface = PlaywrightSurface(page, context, nav_timeout_ms=BROWSER_TIMEOUT)
        self._contexts[id(surface)] = context

        task = asyncio.create_task(self._log_events(surface))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

        if download_dir is not None:
            try:
                await surface.configure_downloads(download_dir)
            except PlaywrightError as e:
                await self.close_surface(surface)
                raise BrowserInitFailed(f"download setup failed: {e}", phase="browser_init") from e

        for cookie in cookies or []:
            try:
                await surface.set_cookie(cookie.name, cookie.value, cookie.domain, cookie.path)
            except PlaywrightError as e:
                logger.debug(f"Failed to set cookie {cookie.name}: {e}")

        return surface

    async def _log_events(self, surface: PlaywrightSurface):
        """Drain page lifecycle events into debug logs. Diagnostic only."""
        try:
            async for event in surface.listen():
                logger.debug(f"Browser event: {event.kind} {event.detail}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Event listener stopped: {e}")

    async def export_cookies(self, surface: PlaywrightSurface) -> list[SavedCookie]:
        context = self._contexts.get(id(surface))
        if context is None:
            return []
        try:
            raw = await context.cookies()
        except PlaywrightError as e:
            logger.warning(f"Failed to export cookies: {e}")
            return []
        return [
            SavedCookie(name=c["name"], value=c["value"], domain=c.get("domain", ""), path=c.get("path", "/"))
            for c in raw
            if "name" in c and "value" in c
        ]

    async def close_surface(self, surface: PlaywrightSurface):
        context = self._contexts.pop(id(surface), None)
        try:
            await surface.close()
        except Exception as e:
            logger.debug(f"Failed to close page: {e}")
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.warning(f"Error closing context: {e}")

    async def stop(self):
        """Close every context and the browser."""
        logger.info("Stopping browser session...")
        for task in list(self._event_tasks):
            task.cancel()

        for context in list(self._contexts.values()):
            try:
                await context.close()
            except Exception as e:
                logger.warning(f"Error closing context: {e}")
        self._contexts.clear()

        try:
            if self._camoufox:
                await self._camoufox.__aexit__(None, None, None)
            elif self._browser:
                await self._browser.close()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            self._camoufox = None
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            finally:
                self._playwright = None

        logger.info("Browser session stopped.")
