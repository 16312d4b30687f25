"""Forward extracted records to an upstream ingestion service over HTTP."""

from __future__ import annotations

import logging
import sys
from typing import Optional

import httpx
from pydantic import ValidationError

from ..config import FORWARD_TIMEOUT
from ..engine.errors import ForwardingFailed
from ..models.result import ForwardResponse

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class Forwarder:
    """Posts ``{organization_id, records}`` to ``url``.

    Every transport or HTTP failure becomes ForwardingFailed, which the
    retry executor treats as transient.
    """

    def __init__(
        self,
        url: str,
        organization_id: str = "",
        timeout: float = FORWARD_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._organization_id = organization_id
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    async def send(self, records: list) -> ForwardResponse:
        body = {"organization_id": self._organization_id, "records": records}
        logger.info(f"[FORWARD] Sending {len(records)} records to {self._url}")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ForwardingFailed(
                f"upstream returned HTTP {e.response.status_code}", phase="forward"
            ) from e
        except httpx.HTTPError as e:
            raise ForwardingFailed(f"request failed: {e}", phase="forward") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        try:
            result = ForwardResponse.model_validate(payload) if payload else ForwardResponse(success=True)
        except ValidationError as e:
            raise ForwardingFailed(f"unexpected upstream reply: {e}", phase="forward") from e

        logger.info(
            f"[FORWARD] Upstream accepted: added={result.records_added}, total={result.total_records}"
        )
        return result
