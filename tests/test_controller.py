import asyncio
import itertools

import pytest

from bridge_scraper.engine.errors import ElementNotFound, LoginFailed, ScraperError, SessionExpired
from bridge_scraper.session_manager.controller import (
    LoginProfile,
    SessionController,
    SessionState,
)
from fakes import FakeSurface

CREDENTIALS = {"#user": "driver01", "#pass": "secret"}


def make_profile(**overrides):
    values = dict(
        name="Test site",
        login_url="https://site.example/login",
        main_url="https://site.example/main",
        required_field="#user",
        login_button="#login",
        login_url_patterns=["/login"],
        marker="#home",
        popup="#already",
        readiness_binding="Svc.GetState",
    )
    values.update(overrides)
    return LoginProfile(**values)


def login_page(clock, marker_after_polls=None, popup=False, popup_clears=True):
    """A login page whose behaviour after clicking the login button is scripted."""
    surface = FakeSurface(clock)
    surface.elements = {"#user", "#pass", "#login"}
    marker_polls = itertools.count(1)

    def _marker_present():
        if marker_after_polls is None or not surface.clicks.count("#login"):
            return "#home" in surface.elements
        return next(marker_polls) >= marker_after_polls

    surface.presence["#home"] = _marker_present

    def _after_login():
        if popup:
            surface.elements.add("#already")
            surface.visible_popups.add("#already")

    def _after_popup():
        surface.elements.discard("#already")
        if popup_clears:
            surface.elements.add("#home")

    surface.on_click["#login"] = _after_login
    surface.on_click["#already"] = _after_popup
    return surface


def test_establish_happy_path(clock):
    surface = login_page(clock, marker_after_polls=2)
    controller = SessionController(surface, make_profile(), CREDENTIALS, account="acme/driver01", clock=clock)

    session = asyncio.run(controller.establish())

    assert session.authenticated
    assert session.account == "acme/driver01"
    assert session.session_id.startswith("session_")
    assert controller.state == SessionState.MAIN_PAGE_READY
    assert [to for _, to in controller.transitions] == [
        SessionState.LOGIN_FORM_LOADED,
        SessionState.CREDENTIALS_SUBMITTED,
        SessionState.POPUP_CHECK,
        SessionState.AUTHENTICATED,
        SessionState.MAIN_PAGE_READY,
    ]
    assert surface.filled == [CREDENTIALS]
    assert surface.navigations == ["https://site.example/login", "https://site.example/main"]


def test_missing_login_form(clock):
    surface = FakeSurface(clock)
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    with pytest.raises(ElementNotFound):
        asyncio.run(controller.establish())

    assert controller.state == SessionState.LOGIN_FAILED
    assert clock.sleeps == [1.0, 1.0]


def test_no_marker_and_no_popup_fails(clock):
    surface = login_page(clock)
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    with pytest.raises(LoginFailed):
        asyncio.run(controller.establish())

    assert controller.state == SessionState.LOGIN_FAILED
    assert surface.clicks == ["#login"]


def test_popup_dismissal_confirms_login(clock):
    surface = login_page(clock, popup=True)
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    asyncio.run(controller.establish())

    assert controller.state == SessionState.MAIN_PAGE_READY
    assert surface.clicks == ["#login", "#already"]


def test_single_resubmission_after_popup(clock):
    surface = login_page(clock, popup=True, popup_clears=False)
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    with pytest.raises(LoginFailed, match="resubmission"):
        asyncio.run(controller.establish())

    assert surface.clicks.count("#login") == 2
    assert len(surface.filled) == 2
    assert controller.state == SessionState.LOGIN_FAILED


def test_click_marker_after_login(clock):
    surface = login_page(clock)
    surface.elements.add("#home")
    controller = SessionController(
        surface, make_profile(click_marker=True), CREDENTIALS, clock=clock
    )

    asyncio.run(controller.establish())

    assert surface.clicks == ["#login", "#home"]


def test_form_gone_confirms_login_without_marker(clock):
    surface = login_page(clock)
    surface.on_click["#login"] = lambda: surface.elements.discard("#user")
    controller = SessionController(surface, make_profile(marker=None), CREDENTIALS, clock=clock)

    asyncio.run(controller.establish())

    assert controller.state == SessionState.MAIN_PAGE_READY


def test_restored_session_reaches_main_page(clock):
    surface = FakeSurface(clock)
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    asyncio.run(controller.open_main_page())

    assert controller.transitions == [(SessionState.UNAUTHENTICATED, SessionState.MAIN_PAGE_READY)]


def test_redirect_to_login_is_session_expired(clock):
    surface = FakeSurface(clock)
    surface.on_navigate = lambda url: "https://site.example/login?expired=1"
    controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

    with pytest.raises(SessionExpired):
        asyncio.run(controller.open_main_page())

    assert controller.state == SessionState.UNAUTHENTICATED


def test_missing_readiness_binding_only_warns(clock):
    surface = FakeSurface(clock)
    surface.binding_ready = False
    controller = SessionController(surface, make_profile(binding_timeout=5.0), CREDENTIALS, clock=clock)

    asyncio.run(controller.open_main_page())

    assert controller.is_ready


def test_every_login_path_terminates(clock):
    for form, marker, popup, clears in itertools.product([True, False], repeat=4):
        surface = login_page(clock, popup=popup, popup_clears=clears)
        if not form:
            surface.elements.discard("#user")
        if marker:
            surface.elements.add("#home")
        controller = SessionController(surface, make_profile(), CREDENTIALS, clock=clock)

        try:
            asyncio.run(controller.establish())
        except ScraperError:
            pass

        case = (form, marker, popup, clears)
        assert controller.state in (SessionState.MAIN_PAGE_READY, SessionState.LOGIN_FAILED), case
        assert len(controller.transitions) <= 8, case
        assert surface.clicks.count("#login") <= 2, case
