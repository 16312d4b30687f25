"""MCP tools for talking to the session manager service."""

from __future__ import annotations

import json

import httpx

from ..config import SESSION_MANAGER_URL

# Scrapes include login, retries with backoff and video enrichment.
REQUEST_TIMEOUT = 600.0


async def _call_session_manager(method: str, path: str, json_body: dict | None = None) -> dict:
    """Make a request to the session manager HTTP service."""
    url = f"{SESSION_MANAGER_URL}{path}"
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            if method == "GET":
                resp = await client.get(url, params=json_body or None)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                try:
                    data = resp.json()
                except ValueError:
                    data = {}
                error = data.get("error", f"HTTP {resp.status_code}")
                if data.get("code"):
                    error = f"{error} (code={data['code']}, phase={data.get('phase') or 'n/a'})"
                return {"error": error}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": "Session Manager is not reachable at "
            f"{SESSION_MANAGER_URL}. It should auto-start with the MCP server. "
            "If running standalone: bridge-scraper-service"
        }
    except httpx.TimeoutException:
        return {"error": "Session Manager timed out. The scrape may still be running."}
    except Exception as e:
        return {"error": f"Failed to connect to Session Manager: {e}"}


async def service_status() -> str:
    """Check the session manager state.

    Returns:
        JSON-formatted status: state, active scrapes, recorded runs,
        last scrape time and last error.
    """
    result = await _call_session_manager("GET", "/status")

    if "error" in result:
        return f"Error: {result['error']}"

    return json.dumps(result, indent=2)
