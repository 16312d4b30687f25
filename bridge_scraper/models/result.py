"""Pydantic models for scrape results."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .vehicle import VehicleRecord, VideoNotificationResult


class ForwardResponse(BaseModel):
    """Upstream service reply to a forwarded payload."""

    success: bool = False
    records_added: int = 0
    total_records: int = 0
    message: str = ""


class ExtractionResult(BaseModel):
    """Outcome of one extraction run. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    records: tuple[VehicleRecord, ...] = ()
    raw_payload: Any = None
    session_id: str
    forward_response: Optional[ForwardResponse] = None
    side_artifacts: tuple[VideoNotificationResult, ...] = ()
    raw_path: Optional[str] = None


class CsvDownloadResult(BaseModel):
    """A completed, renamed usage-statement CSV."""

    model_config = ConfigDict(frozen=True)

    csv_path: Path
    size_bytes: int = 0
    # Raw file bytes in the site's own encoding. Not part of JSON dumps.
    csv_content: bytes = Field(default=b"", exclude=True, repr=False)

    @classmethod
    def from_path(cls, path: Path) -> "CsvDownloadResult":
        content = path.read_bytes()
        return cls(csv_path=path, size_bytes=len(content), csv_content=content)


class ScrapeRun(BaseModel):
    """A recorded scrape run."""

    id: int
    kind: str
    account: str = ""
    session_id: str = ""
    status: str = "running"
    record_count: int = 0
    artifact_count: int = 0
    output_path: str = ""
    error_code: str = ""
    error: str = ""
    started_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
    completed_at: Optional[str] = None
