"""Detect completion of downloads triggered by page actions."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from .errors import DownloadTimedOut
from .timing import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

IN_PROGRESS_SUFFIXES = (".crdownload", ".part", ".partial", ".tmp", ".download")
DOWNLOAD_TIMEOUT = 30.0
DOWNLOAD_POLL_INTERVAL = 0.5


@dataclass
class DownloadRecord:
    known_paths_before: set[Path] = field(default_factory=set)
    detected_path: Optional[Path] = None


def snapshot(directory: Path) -> set[Path]:
    if not directory.exists():
        return set()
    return {p for p in directory.iterdir() if p.is_file()}


class DownloadWatcher:
    """Watch one directory for the artifact produced by a triggering action.

    Files present before the trigger never qualify. Anything that appears
    afterwards does, so downloads that overlap in time need one directory
    per watcher.
    """

    def __init__(
        self,
        directory: Path,
        final_extensions: Iterable[str] = (".csv",),
        min_bytes: int = 0,
        poll_interval: float = DOWNLOAD_POLL_INTERVAL,
        clock: Optional[Clock] = None,
    ):
        self.directory = Path(directory)
        self.final_extensions = tuple(ext.lower() for ext in final_extensions)
        self.min_bytes = min_bytes
        self.poll_interval = poll_interval
        self._clock = clock or SYSTEM_CLOCK

    def is_complete(self, path: Path, record: DownloadRecord) -> bool:
        if path in record.known_paths_before:
            return False
        name = path.name.lower()
        if name.endswith(IN_PROGRESS_SUFFIXES):
            return False
        suffix = path.suffix.lower()
        if suffix in self.final_extensions:
            return True
        # Opaque names (no filename from the server) only count once the
        # file is larger than the placeholder threshold.
        try:
            return path.stat().st_size > self.min_bytes
        except FileNotFoundError:
            return False

    def find_completed(self, record: DownloadRecord) -> Optional[Path]:
        for path in sorted(snapshot(self.directory)):
            if self.is_complete(path, record):
                return path
        return None

    async def trigger_and_await(
        self,
        trigger: Callable[[], Awaitable[object]],
        timeout: float = DOWNLOAD_TIMEOUT,
        expected_extension: Optional[str] = None,
        existing: Optional[set[Path]] = None,
    ) -> Path:
        """Run ``trigger`` and return the path of the artifact it produced.

        ``existing`` overrides the pre-trigger snapshot. Extension-less
        artifacts are renamed to carry ``expected_extension`` (defaults to the
        first final extension).
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        record = DownloadRecord(
            known_paths_before=set(existing) if existing is not None else snapshot(self.directory)
        )
        logger.info(
            f"[DOWNLOAD] Watching {self.directory} ({len(record.known_paths_before)} existing files)"
        )

        await trigger()

        start = self._clock.monotonic()
        while True:
            found = self.find_completed(record)
            if found is not None:
                record.detected_path = self._normalize(found, expected_extension)
                logger.info(f"[DOWNLOAD] Completed artifact: {record.detected_path}")
                return record.detected_path

            if self._clock.monotonic() - start >= timeout:
                raise DownloadTimedOut(
                    f"no completed download in {self.directory} within {timeout}s",
                    phase="download",
                )
            await self._clock.sleep(self.poll_interval)

    def _normalize(self, path: Path, expected_extension: Optional[str]) -> Path:
        if path.suffix:
            return path
        extension = expected_extension or (self.final_extensions[0] if self.final_extensions else "")
        if not extension:
            return path
        target = path.with_name(path.name + extension)
        path.rename(target)
        logger.info(f"[DOWNLOAD] Renamed {path.name} -> {target.name}")
        return target


def rename_with_prefix(path: Path, prefix: str, directory: Optional[Path] = None) -> Path:
    """Rename ``path`` to ``<prefix>_<name>``, moving it into ``directory`` when given."""
    target = Path(directory or path.parent) / f"{prefix}_{path.name}"
    target.parent.mkdir(parents=True, exist_ok=True)
    path.replace(target)
    logger.info(f"[DOWNLOAD] Renamed {path.name} -> {target}")
    return target
