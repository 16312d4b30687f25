import asyncio
import json

import httpx
import pytest

from bridge_scraper.engine.errors import ForwardingFailed
from bridge_scraper.session_manager.forwarder import Forwarder


def forwarder_with(handler, organization_id=""):
    return Forwarder("http://ingest.test/api/vehicles", organization_id, transport=httpx.MockTransport(handler))


def test_send_posts_records_with_organization():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"success": True, "records_added": 2, "total_records": 9})

    response = asyncio.run(forwarder_with(handler, "org-7").send([{"VehicleCD": 1}, {"VehicleCD": 2}]))

    assert response.success
    assert response.total_records == 9
    assert seen == [
        ("POST", "http://ingest.test/api/vehicles", {"organization_id": "org-7", "records": [{"VehicleCD": 1}, {"VehicleCD": 2}]})
    ]


def test_empty_reply_counts_as_success():
    response = asyncio.run(forwarder_with(lambda request: httpx.Response(204)).send([]))

    assert response.success


def test_http_error_status_is_forwarding_failure():
    with pytest.raises(ForwardingFailed) as exc:
        asyncio.run(forwarder_with(lambda request: httpx.Response(500)).send([]))

    assert exc.value.retryable
    assert "500" in str(exc.value)


def test_transport_error_is_forwarding_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ForwardingFailed, match="connection refused"):
        asyncio.run(forwarder_with(handler).send([]))


def test_malformed_reply_is_forwarding_failure():
    handler = lambda request: httpx.Response(200, json={"records_added": "many"})

    with pytest.raises(ForwardingFailed):
        asyncio.run(forwarder_with(handler).send([]))
