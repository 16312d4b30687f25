import asyncio
import json
from pathlib import Path

import httpx
import pytest

from bridge_scraper.constants import (
    DVR_NOTIFICATION_BINDING,
    VEHICLE_STATE_BINDING,
    VENUS_LOGIN_URL,
    VENUS_MAIN_URL,
    VENUS_SELECTORS,
)
from bridge_scraper.engine.errors import BrowserInitFailed, ExtractionFailed
from bridge_scraper.models.session import SavedCookie, ScrapeRequest
from bridge_scraper.session_manager.forwarder import Forwarder
from bridge_scraper.session_manager.pipeline import ExtractionPipeline, scrape_with_retry
from fakes import FakeBrowser, FakeSurface, Reply

VEHICLES = [
    {"VehicleCD": 101, "VehicleName": "Truck 1", "Status": "Driving", "Speed": 42},
    {"VehicleCD": 102, "VehicleName": "Truck 2", "Status": "Parked"},
    {"VehicleCD": 103, "VehicleName": "Van 3", "Status": "Offline", "Driver": "佐藤"},
]

REQUEST = ScrapeRequest(comp_id="acme", user_name="driver01", user_pass="secret", include_videos=False)


def venus_page(clock, logged_in=False, vehicles=VEHICLES):
    """Main page that bounces to the login form until credentials are submitted."""
    surface = FakeSurface(clock)
    state = {"logged_in": logged_in}
    surface.elements = {
        VENUS_SELECTORS["company_id"],
        VENUS_SELECTORS["user_name"],
        VENUS_SELECTORS["password"],
        VENUS_SELECTORS["login_button"],
        VENUS_SELECTORS["vehicle_grid"],
    }

    def _navigate(url):
        if url == VENUS_MAIN_URL and not state["logged_in"]:
            return VENUS_LOGIN_URL
        return url

    def _login():
        state["logged_in"] = True
        surface.elements.add(VENUS_SELECTORS["home_button"])

    surface.on_navigate = _navigate
    surface.on_click[VENUS_SELECTORS["login_button"]] = _login
    surface.bindings[VEHICLE_STATE_BINDING] = lambda args: Reply(result=[json.dumps(vehicles)], after=1.0)
    return surface


def make_pipeline(browser, tmp_path, clock, **kwargs):
    return ExtractionPipeline(browser, data_dir=tmp_path, clock=clock, **kwargs)


def test_login_and_extract_vehicle_records(tmp_path, clock):
    surface = venus_page(clock)
    browser = FakeBrowser(
        surfaces=[surface],
        exported=[SavedCookie(name="ASP.NET_SessionId", value="abc", domain="theearth-np.com")],
    )
    pipeline = make_pipeline(browser, tmp_path, clock)

    result = asyncio.run(pipeline.run(REQUEST))

    assert [r.vehicle_name for r in result.records] == ["Truck 1", "Truck 2", "Van 3"]
    assert result.records[0].vehicle_cd == "101"
    assert json.loads(result.records[0].metadata["Speed"]) == 42
    assert result.session_id.startswith("session_")
    assert result.raw_payload == VEHICLES
    assert json.loads(Path(result.raw_path).read_text(encoding="utf-8")) == VEHICLES
    assert result.forward_response is None
    assert result.side_artifacts == ()
    assert surface.calls[0] == (VEHICLE_STATE_BINDING, [REQUEST.branch_id, REQUEST.filter_id])
    assert surface.navigations == [VENUS_MAIN_URL, VENUS_LOGIN_URL, VENUS_MAIN_URL]
    assert surface.closed
    assert pipeline.last_cookies[0].name == "ASP.NET_SessionId"


def test_restored_session_skips_login(tmp_path, clock):
    surface = venus_page(clock, logged_in=True)
    cookies = [SavedCookie(name="ASP.NET_SessionId", value="abc", domain="theearth-np.com")]
    browser = FakeBrowser(surfaces=[surface])

    result = asyncio.run(make_pipeline(browser, tmp_path, clock).run(REQUEST, cookies=cookies))

    assert len(result.records) == 3
    assert surface.filled == []
    assert surface.cookies == [("ASP.NET_SessionId", "abc", "theearth-np.com", "/")]


def test_force_login_does_not_replay_cookies(tmp_path, clock):
    surface = venus_page(clock)
    cookies = [SavedCookie(name="ASP.NET_SessionId", value="abc", domain="theearth-np.com")]
    browser = FakeBrowser(surfaces=[surface])

    asyncio.run(make_pipeline(browser, tmp_path, clock).run(REQUEST, cookies=cookies, force_login=True))

    assert surface.cookies == []
    assert browser.opened[0][1] is None


def test_non_array_payload_is_extraction_failure(tmp_path, clock):
    surface = venus_page(clock, logged_in=True, vehicles={"error": "denied"})
    browser = FakeBrowser(surfaces=[surface])

    with pytest.raises(ExtractionFailed):
        asyncio.run(make_pipeline(browser, tmp_path, clock).run(REQUEST))

    assert surface.closed
    assert list(tmp_path.iterdir()) == []


def test_missing_vehicle_binding_is_extraction_failure(tmp_path, clock):
    surface = venus_page(clock, logged_in=True)
    surface.binding_ready = False
    browser = FakeBrowser(surfaces=[surface])

    with pytest.raises(ExtractionFailed, match="not found"):
        asyncio.run(make_pipeline(browser, tmp_path, clock).run(REQUEST))


def test_forwarding_posts_raw_payload(tmp_path, clock):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "records_added": 3, "total_records": 30})

    forwarder = Forwarder("http://ingest.test/vehicles", "org-1", transport=httpx.MockTransport(handler))
    browser = FakeBrowser(surfaces=[venus_page(clock, logged_in=True)])

    result = asyncio.run(make_pipeline(browser, tmp_path, clock, forwarder=forwarder).run(REQUEST))

    assert result.forward_response.records_added == 3
    assert seen == [{"organization_id": "org-1", "records": VEHICLES}]


def test_forwarding_failure_does_not_fail_extraction(tmp_path, clock):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    forwarder = Forwarder("http://ingest.test/vehicles", transport=httpx.MockTransport(handler))
    browser = FakeBrowser(surfaces=[venus_page(clock, logged_in=True)])
    pipeline = make_pipeline(browser, tmp_path, clock, forwarder=forwarder, max_retries=2, initial_backoff_ms=10)

    result = asyncio.run(pipeline.run(REQUEST))

    assert result.forward_response is None
    assert len(result.records) == 3
    assert len(calls) == 3


def test_video_notifications_become_side_artifacts(tmp_path, clock):
    surface = venus_page(clock, logged_in=True)
    notifications = [
        {"VehicleCD": 101, "VehicleName": "Truck 1", "SerialNo": "S1", "FileName": "ev1.vdf",
         "FilePath": "2026/10", "EventType": "Harsh braking"},
    ]
    surface.bindings[DVR_NOTIFICATION_BINDING] = lambda args: Reply(result=[1, json.dumps(notifications)])
    browser = FakeBrowser(surfaces=[surface])
    request = REQUEST.model_copy(update={"include_videos": True})

    result = asyncio.run(make_pipeline(browser, tmp_path, clock).run(request))

    assert len(result.side_artifacts) == 1
    assert result.side_artifacts[0].mp4_url.endswith("/2026/10/ev1-1.mp4")


def test_enrichment_failure_leaves_records_intact(tmp_path, clock):
    surface = venus_page(clock, logged_in=True)
    surface.bindings[DVR_NOTIFICATION_BINDING] = lambda args: Reply(result=["only one value"])
    browser = FakeBrowser(surfaces=[surface])
    request = REQUEST.model_copy(update={"include_videos": True})

    result = asyncio.run(make_pipeline(browser, tmp_path, clock).run(request))

    assert len(result.records) == 3
    assert result.side_artifacts == ()


def test_result_is_immutable(tmp_path, clock):
    browser = FakeBrowser(surfaces=[venus_page(clock, logged_in=True)])
    result = asyncio.run(make_pipeline(browser, tmp_path, clock).run(REQUEST))

    with pytest.raises(Exception):
        result.session_id = "other"


def test_scrape_with_retry_recovers_from_browser_failure(tmp_path, clock):
    browser = FakeBrowser(
        surfaces=[venus_page(clock, logged_in=True)],
        open_errors=[BrowserInitFailed("context crashed", phase="browser")],
    )
    pipeline = make_pipeline(browser, tmp_path, clock)

    result = asyncio.run(scrape_with_retry(pipeline, REQUEST, clock=clock))

    assert len(result.records) == 3
    assert clock.sleeps[0] == 1.0


def test_scrape_with_retry_does_not_retry_structural_failure(tmp_path, clock):
    surfaces = [venus_page(clock, logged_in=True, vehicles="oops"), venus_page(clock, logged_in=True)]
    browser = FakeBrowser(surfaces=surfaces)

    with pytest.raises(ExtractionFailed):
        asyncio.run(scrape_with_retry(make_pipeline(browser, tmp_path, clock), REQUEST, clock=clock))

    assert len(browser.opened) == 1
