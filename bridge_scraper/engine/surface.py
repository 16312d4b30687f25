"""Remote surface: the primitive operations the engine performs on one page."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional, Protocol
from uuid import uuid4

from playwright.async_api import BrowserContext, Download, Error as PlaywrightError, Page

from .errors import NavigationFailed, ScriptFailed

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Page events forwarded to listeners.
EVENT_KINDS = ("close", "crash", "console", "pageerror", "download", "framenavigated")


@dataclass
class BrowserEvent:
    kind: str
    detail: str = ""
    at: str = field(default_factory=lambda: datetime.utcnow().isoformat())


class RemoteSurface(Protocol):
    """Capabilities consumed by the engine. Implemented by the automation library adapter."""

    async def navigate(self, url: str) -> None: ...

    async def evaluate(self, script: str) -> Any: ...

    async def set_cookie(self, name: str, value: str, domain: str, path: str = "/") -> None: ...

    async def screenshot(self) -> bytes: ...

    async def configure_downloads(self, directory: Path) -> None: ...

    async def current_url(self) -> str: ...

    async def close(self) -> None: ...

    def listen(self, kinds: Iterable[str] = EVENT_KINDS) -> AsyncIterator[BrowserEvent]: ...


class PlaywrightSurface:
    """RemoteSurface backed by a Playwright page."""

    def __init__(self, page: Page, context: BrowserContext, nav_timeout_ms: int = 30000):
        self._page = page
        self._context = context
        self._nav_timeout_ms = nav_timeout_ms
        self._download_dir: Optional[Path] = None
        self._download_tasks: set[asyncio.Task] = set()

    @property
    def page(self) -> Page:
        return self._page

    async def navigate(self, url: str) -> None:
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=self._nav_timeout_ms)
        except PlaywrightError as e:
            raise NavigationFailed(f"{url}: {e}", phase="navigate") from e

    async def evaluate(self, script: str) -> Any:
        try:
            return await self._page.evaluate(script)
        except PlaywrightError as e:
            raise ScriptFailed(str(e), phase="evaluate") from e

    async def set_cookie(self, name: str, value: str, domain: str, path: str = "/") -> None:
        await self._context.add_cookies(
            [{"name": name, "value": value, "domain": domain, "path": path}]
        )

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(full_page=True)

    async def current_url(self) -> str:
        try:
            return str(await self._page.evaluate("window.location.href"))
        except PlaywrightError:
            return self._page.url

    async def configure_downloads(self, directory: Path) -> None:
        """Save downloads triggered by page actions into ``directory``.

        Each Playwright download is written through a ``.part`` file that is
        renamed once complete. Saved names carry a short unique suffix so a
        file already in ``directory`` is never overwritten in place.
        """
        directory.mkdir(parents=True, exist_ok=True)
        self._download_dir = directory.resolve()
        self._page.on("download", self._on_download)
        logger.info(f"[DOWNLOAD] Saving downloads into {self._download_dir}")

    def _on_download(self, download: Download) -> None:
        task = asyncio.create_task(self._save_download(download))
        self._download_tasks.add(task)
        task.add_done_callback(self._download_tasks.discard)

    async def _save_download(self, download: Download) -> None:
        target = self._download_dir / unique_name(download.suggested_filename)
        partial = target.with_name(target.name + ".part")
        try:
            await download.save_as(partial)
            partial.rename(target)
            logger.info(f"[DOWNLOAD] Saved {target.name}")
        except PlaywrightError as e:
            logger.warning(f"[DOWNLOAD] Failed to save {download.suggested_filename}: {e}")

    async def listen(self, kinds: Iterable[str] = EVENT_KINDS) -> AsyncIterator[BrowserEvent]:
        """Yield page events of the given kinds until the page closes."""
        queue: asyncio.Queue[Optional[BrowserEvent]] = asyncio.Queue()
        handlers = []
        for kind in kinds:
            def _handler(payload=None, _kind=kind):
                queue.put_nowait(BrowserEvent(_kind, _describe(payload)))
                if _kind in ("close", "crash"):
                    queue.put_nowait(None)

            self._page.on(kind, _handler)
            handlers.append((kind, _handler))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            for kind, _handler in handlers:
                self._page.remove_listener(kind, _handler)

    async def close(self) -> None:
        for task in list(self._download_tasks):
            task.cancel()
        if not self._page.is_closed():
            await self._page.close()


def _describe(payload: Any) -> str:
    if payload is None:
        return ""
    text = getattr(payload, "text", None)
    if isinstance(text, str):
        return text
    url = getattr(payload, "url", None)
    if isinstance(url, str):
        return url
    return str(payload)


def unique_name(suggested: str) -> str:
    """``meisai.csv`` -> ``meisai-1a2b3c4d.csv``."""
    path = Path(suggested or "download")
    return f"{path.stem}-{uuid4().hex[:8]}{path.suffix}"
