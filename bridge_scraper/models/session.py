"""Pydantic models for session state and scrape requests."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_BRANCH_ID, DEFAULT_FILTER_ID


class Session(BaseModel):
    """One authenticated page session, owned by a single pipeline run."""

    session_id: str
    account: str = ""
    authenticated: bool = False
    last_activity: str = Field(default_factory=lambda: datetime.utcnow().isoformat())

    def touch(self):
        self.last_activity = datetime.utcnow().isoformat()


class SavedCookie(BaseModel):
    """A browser cookie exported from one session for replay in another."""

    name: str
    value: str
    domain: str
    path: str = "/"


class ServiceStatus(BaseModel):
    """Current state of the session manager service."""

    state: str = "idle"  # idle, scraping, error
    active_scrapes: int = 0
    runs_recorded: int = 0
    last_scrape_time: Optional[str] = None
    last_error: Optional[str] = None
    message: str = ""


class ScrapeRequest(BaseModel):
    """Credentials and options for a vehicle-data scrape."""

    comp_id: str
    user_name: str
    user_pass: str = Field(repr=False)
    branch_id: str = DEFAULT_BRANCH_ID
    filter_id: str = DEFAULT_FILTER_ID
    headless: Optional[bool] = None
    debug: bool = False
    force_login: bool = False
    include_videos: bool = True
    forward_url: Optional[str] = None
    organization_id: Optional[str] = None

    @property
    def account(self) -> str:
        return f"{self.comp_id}/{self.user_name}"


class EtcDownloadRequest(BaseModel):
    """Credentials and options for an ETC usage-statement CSV download."""

    user_id: str
    password: str = Field(repr=False)
    download_path: Optional[Path] = None
    headless: Optional[bool] = None

    @property
    def account(self) -> str:
        return self.user_id
