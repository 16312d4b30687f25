"""Session state machine: reach an authenticated page on the main application.

    UNAUTHENTICATED -> LOGIN_FORM_LOADED -> CREDENTIALS_SUBMITTED -> POPUP_CHECK
        -> AUTHENTICATED -> MAIN_PAGE_READY

``LOGIN_FAILED`` is terminal. The only loop is a single full resubmission of
the credentials after an "already logged in" popup, so every run ends in a
terminal state after a bounded number of transitions.
"""

from __future__ import annotations

import base64
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..engine.errors import ElementNotFound, LoginFailed, ScraperError, SessionExpired
from ..engine.idle import await_dom_stable, await_network_idle
from ..engine.surface import RemoteSurface
from ..engine.timing import SYSTEM_CLOCK, Clock, poll_attempts, poll_until
from ..models.session import Session
from .page_checks import click, dismiss_popup, element_exists, fill_fields, is_login_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGIN_FORM_LOADED = "login_form_loaded"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    POPUP_CHECK = "popup_check"
    AUTHENTICATED = "authenticated"
    MAIN_PAGE_READY = "main_page_ready"
    LOGIN_FAILED = "login_failed"


ALLOWED_TRANSITIONS = {
    SessionState.UNAUTHENTICATED: {
        SessionState.LOGIN_FORM_LOADED,
        # Restored cookies can land directly on the main page.
        SessionState.MAIN_PAGE_READY,
    },
    SessionState.LOGIN_FORM_LOADED: {SessionState.CREDENTIALS_SUBMITTED},
    SessionState.CREDENTIALS_SUBMITTED: {SessionState.POPUP_CHECK},
    SessionState.POPUP_CHECK: {SessionState.AUTHENTICATED, SessionState.CREDENTIALS_SUBMITTED},
    SessionState.AUTHENTICATED: {SessionState.MAIN_PAGE_READY},
    SessionState.MAIN_PAGE_READY: set(),
    SessionState.LOGIN_FAILED: set(),
}


@dataclass
class LoginProfile:
    """Site data driving the state machine."""

    name: str
    login_url: str
    main_url: str
    # Selector proving the login form is present
    required_field: str
    login_button: str
    login_url_patterns: list[str] = field(default_factory=list)
    # Post-login marker; when None, login is confirmed once the form is gone
    marker: Optional[str] = None
    click_marker: bool = False
    popup: Optional[str] = None
    # Link on ``login_url`` that leads to the form
    entry_link: Optional[str] = None
    # Dotted path of a page binding that must exist on the main page
    readiness_binding: Optional[str] = None
    cookie_domain: str = ""
    form_attempts: int = 3
    marker_attempts: int = 5
    poll_interval: float = 1.0
    ready_state_timeout: float = 30.0
    binding_timeout: float = 15.0


def binding_ready_script(dotted_path: str) -> str:
    return f"""
    (() => {{
        let obj = window;
        for (const part of {json.dumps(dotted_path.split("."))}) {{
            if (obj === undefined || obj === null) {{ return false; }}
            obj = obj[part];
        }}
        return typeof obj === 'function';
    }})()
    """


class SessionController:
    """Drives one page from a blank state to the main application page."""

    def __init__(
        self,
        surface: RemoteSurface,
        profile: LoginProfile,
        credentials: dict[str, str],
        account: str = "",
        clock: Optional[Clock] = None,
        network_idle_timeout: float = 30.0,
        dom_stable_timeout: float = 10.0,
        debug: bool = False,
    ):
        self._surface = surface
        self._profile = profile
        self._credentials = credentials
        self._account = account
        self._clock = clock or SYSTEM_CLOCK
        self._network_idle_timeout = network_idle_timeout
        self._dom_stable_timeout = dom_stable_timeout
        self._debug = debug
        self.state = SessionState.UNAUTHENTICATED
        self.transitions: list[tuple[SessionState, SessionState]] = []

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.MAIN_PAGE_READY

    def _advance(self, new_state: SessionState):
        if new_state not in ALLOWED_TRANSITIONS[self.state] and new_state != SessionState.LOGIN_FAILED:
            raise RuntimeError(f"illegal session transition {self.state.value} -> {new_state.value}")
        logger.debug(f"[SESSION] {self.state.value} -> {new_state.value}")
        self.transitions.append((self.state, new_state))
        self.state = new_state

    def _fail(self, error: ScraperError) -> ScraperError:
        self._advance(SessionState.LOGIN_FAILED)
        logger.error(f"[LOGIN] {self._profile.name}: {error}")
        return error

    async def _idle(self):
        await await_network_idle(self._surface, timeout=self._network_idle_timeout, clock=self._clock)

    async def _stable(self):
        await await_dom_stable(self._surface, timeout=self._dom_stable_timeout, clock=self._clock)

    async def establish(self) -> Session:
        """Full login followed by main-page navigation."""
        logger.info(f"[LOGIN] Starting login for {self._profile.name} ({self._account})")
        await self.load_login_form()
        await self.submit_and_confirm()
        await self.open_main_page()
        session_id = f"session_{int(time.time())}"
        logger.info(f"[LOGIN] Login successful, session ID: {session_id}")
        return Session(session_id=session_id, account=self._account, authenticated=True)

    async def load_login_form(self):
        profile = self._profile
        await self._surface.navigate(profile.login_url)

        if profile.entry_link:
            await self._idle()
            if not await click(self._surface, profile.entry_link):
                raise self._fail(
                    ElementNotFound(f"login link {profile.entry_link}", phase="login_form")
                )

        found = await poll_attempts(
            lambda: element_exists(self._surface, profile.required_field),
            attempts=profile.form_attempts,
            interval=profile.poll_interval,
            clock=self._clock,
        )
        if not found:
            raise self._fail(
                ElementNotFound(f"login form field {profile.required_field}", phase="login_form")
            )
        self._advance(SessionState.LOGIN_FORM_LOADED)

    async def submit_credentials(self):
        profile = self._profile
        if profile.popup:
            await dismiss_popup(self._surface, profile.popup)

        await fill_fields(self._surface, self._credentials)
        await self._debug_screenshot()

        logger.info("[LOGIN] Clicking login button...")
        if not await click(self._surface, profile.login_button):
            raise self._fail(
                ElementNotFound(f"login button {profile.login_button}", phase="login_submit")
            )
        await self._idle()
        self._advance(SessionState.CREDENTIALS_SUBMITTED)

    async def submit_and_confirm(self):
        await self.submit_credentials()
        self._advance(SessionState.POPUP_CHECK)

        if not await self._poll_marker():
            if not await self._handle_already_logged_in():
                logger.info("[LOGIN] Marker still missing after popup, submitting login again...")
                await self.submit_credentials()
                self._advance(SessionState.POPUP_CHECK)
                if not await self._poll_marker():
                    raise self._fail(
                        LoginFailed("marker not found after resubmission", phase="login_verify")
                    )

        self._advance(SessionState.AUTHENTICATED)
        if self._profile.click_marker and self._profile.marker:
            logger.info("[LOGIN] Clicking post-login marker to reach the home page...")
            await click(self._surface, self._profile.marker)
            await self._idle()

    async def _handle_already_logged_in(self) -> bool:
        """Dismiss the "already logged in" popup and re-check the marker.

        Raises LoginFailed when no popup is present: the page is neither
        logged in nor showing the known obstacle.
        """
        popup = self._profile.popup
        logger.info("[LOGIN] Marker not found, checking for popup...")
        if not popup or not await element_exists(self._surface, popup):
            raise self._fail(LoginFailed("Login verification failed", phase="login_verify"))

        logger.info("[LOGIN] Popup found, clicking to dismiss...")
        await dismiss_popup(self._surface, popup)
        await self._idle()
        logger.info(f"[LOGIN] URL after popup dismiss: {await self._surface.current_url()}")
        return await self._poll_marker()

    async def _poll_marker(self) -> bool:
        profile = self._profile

        async def _check() -> bool:
            try:
                if profile.marker:
                    return await element_exists(self._surface, profile.marker)
                return not await element_exists(self._surface, profile.required_field)
            except ScraperError as e:
                logger.debug(f"[LOGIN] Marker check failed: {e}")
                return False

        return await poll_attempts(
            _check, attempts=profile.marker_attempts, interval=profile.poll_interval, clock=self._clock
        )

    async def open_main_page(self):
        """Navigate to the main application page and wait for it to be usable.

        Raises SessionExpired when the site silently redirects back to login.
        A missing readiness binding only logs a warning; it may attach late.
        """
        profile = self._profile
        logger.info(f"[SESSION] Navigating to {profile.main_url}")
        await self._surface.navigate(profile.main_url)

        loaded = await poll_until(
            self._ready_state_complete,
            timeout=profile.ready_state_timeout,
            interval=profile.poll_interval,
            clock=self._clock,
        )
        if not loaded:
            logger.warning("[SESSION] document.readyState never reached complete, proceeding")
        await self._idle()
        await self._stable()

        url = await self._surface.current_url()
        logger.info(f"[SESSION] Current URL: {url}")
        if is_login_url(url, profile.login_url_patterns):
            raise SessionExpired("Redirected to login page - session expired", phase="main_page")

        if profile.readiness_binding:
            ready = await poll_until(
                self._binding_ready,
                timeout=profile.binding_timeout,
                interval=profile.poll_interval,
                clock=self._clock,
            )
            if not ready:
                logger.warning(
                    f"[SESSION] {profile.readiness_binding} not ready after "
                    f"{profile.binding_timeout:.0f}s, proceeding anyway..."
                )

        if self.state == SessionState.UNAUTHENTICATED:
            logger.info("[SESSION] Main page reached without login (restored session)")
        self._advance(SessionState.MAIN_PAGE_READY)

    async def _ready_state_complete(self) -> bool:
        return await self._surface.evaluate("document.readyState") == "complete"

    async def _binding_ready(self) -> bool:
        return bool(await self._surface.evaluate(binding_ready_script(self._profile.readiness_binding)))

    async def _debug_screenshot(self):
        if not self._debug:
            return
        try:
            png = await self._surface.screenshot()
        except Exception as e:
            logger.debug(f"[LOGIN] Screenshot failed: {e}")
            return
        logger.debug(f"[LOGIN] Screenshot: data:image/png;base64,{base64.b64encode(png).decode()}")
