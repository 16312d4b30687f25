"""Video notification enrichment for the vehicle monitoring site.

Each notification either already names its recorder file, is found in the
recorder's file list, or needs a transfer request before the mp4 exists.
Only the first two produce a result; transfers are fire-and-forget.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from pydantic import ValidationError

from ..constants import (
    DVR_FILE_LIST_BINDING,
    DVR_FILE_TRANSFER_BINDING,
    DVR_NOTIFICATION_BINDING,
    DVR_NOTIFICATION_SORT,
    VENUS_DVR_BASE,
)
from ..engine.bridge import AsyncBridge, CallbackResult
from ..engine.errors import ExtractionFailed, RemoteCallFailed, RemoteCallTimedOut, ScraperError
from ..models.vehicle import DvrFileInfo, DvrNotification, VideoNotificationResult

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

NOTIFICATION_TIMEOUT = 60.0
FILE_REQUEST_TIMEOUT = 30.0


def build_video_url(file_path: str, file_name: str) -> str:
    base_name = file_name.replace(".vdf", "")
    return f"{VENUS_DVR_BASE}/{file_path}/{base_name}-1.mp4"


def _parse_list(items, model):
    if not isinstance(items, list):
        return []
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.debug(f"[DVR] Skipping malformed entry: {e}")
    return parsed


class VideoEnricher:
    """Collects ready-to-fetch mp4 URLs for the page's video notifications."""

    def __init__(self, bridge: AsyncBridge):
        self._bridge = bridge

    async def fetch_notifications(self) -> list[DvrNotification]:
        """Monitoring_DvrNotification2 calls back once with ``(count, json)``.

        An unavailable binding yields no notifications rather than an error.
        """
        logger.info("[DVR] Fetching video notifications...")
        try:
            result = await self._bridge.call(
                DVR_NOTIFICATION_BINDING,
                DVR_NOTIFICATION_SORT,
                timeout=NOTIFICATION_TIMEOUT,
                failure_callback=False,
            )
        except RemoteCallFailed as e:
            if e.binding_unavailable:
                logger.warning(f"[DVR] {DVR_NOTIFICATION_BINDING} not available")
                return []
            raise

        # Some site builds pass the pair as one array argument
        args = result.args
        if len(args) == 1 and isinstance(args[0], list):
            args = args[0]
        if len(args) < 2:
            raise ExtractionFailed(f"unexpected notification callback shape: {args!r}", phase="video")

        logger.info(f"[DVR] Notification count from API: {args[0]}")
        payload = args[1]
        if isinstance(payload, str):
            payload = CallbackResult(outcome=result.outcome, args=[payload]).json_arg(0, default=[])
        notifications = _parse_list(payload, DvrNotification)
        logger.info(f"[DVR] Found {len(notifications)} video notifications")
        return notifications

    async def list_files(self, vehicle_cd: int) -> list[DvrFileInfo]:
        """Request_DvrFileList calls back with five values; the third is the file list JSON."""
        result = await self._bridge.call(DVR_FILE_LIST_BINDING, vehicle_cd, timeout=FILE_REQUEST_TIMEOUT)
        try:
            payload = result.json_arg(2, default=[])
        except ExtractionFailed as e:
            logger.debug(f"[DVR] Failed to parse video file list: {e}")
            return []
        return _parse_list(payload, DvrFileInfo)

    async def request_transfer(self, serial_no: str, file_name: str) -> bool:
        try:
            await self._bridge.call(
                DVR_FILE_TRANSFER_BINDING, serial_no, file_name, timeout=FILE_REQUEST_TIMEOUT
            )
        except (RemoteCallFailed, RemoteCallTimedOut) as e:
            logger.warning(f"[DVR] Video download request failed: {e}")
            return False
        return True

    async def _resolve(self, notification: DvrNotification) -> Optional[VideoNotificationResult]:
        if notification.file_path:
            url = build_video_url(notification.file_path, notification.file_name)
            return VideoNotificationResult.from_notification(notification, url)

        files = await self.list_files(notification.vehicle_cd)
        match = next(
            (f for f in files if f.file_name == notification.file_name and f.file_path),
            None,
        )
        if match:
            return VideoNotificationResult.from_notification(
                notification, build_video_url(match.file_path, match.file_name)
            )

        if await self.request_transfer(notification.serial_no, notification.file_name):
            logger.info(
                f"[DVR] Video download requested: vehicle={notification.vehicle_name}, "
                f"event={notification.event_type}, datetime={notification.dvr_datetime}"
            )
        return None

    async def process(self) -> list[VideoNotificationResult]:
        notifications = await self.fetch_notifications()
        if not notifications:
            logger.info("[DVR] No video notifications to process")
            return []

        results = []
        for notification in notifications:
            try:
                resolved = await self._resolve(notification)
            except ScraperError as e:
                logger.warning(f"[DVR] Skipping notification {notification.file_name}: {e}")
                continue
            if resolved:
                logger.info(
                    f"[DVR] Video ready: vehicle={resolved.vehicle_name}, "
                    f"event={resolved.event_type}, mp4={resolved.mp4_url}"
                )
                results.append(resolved)

        logger.info(f"[DVR] Video notification processing completed: {len(results)} ready videos")
        return results
