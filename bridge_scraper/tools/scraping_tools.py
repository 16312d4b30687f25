"""MCP tools for vehicle scrapes and ETC CSV downloads."""

from __future__ import annotations

from .session_tools import _call_session_manager


async def scrape_vehicles(
    comp_id: str,
    user_name: str,
    user_pass: str,
    branch_id: str = "",
    filter_id: str = "",
    force_login: bool = False,
    include_videos: bool = True,
) -> str:
    """Scrape the vehicle state table from the monitoring site.

    Reuses saved session cookies when possible, otherwise logs in.
    Raw data is saved locally and forwarded upstream when configured.

    Returns:
        Readable summary of vehicles and ready video notifications.
    """
    body = {
        "comp_id": comp_id,
        "user_name": user_name,
        "user_pass": user_pass,
        "force_login": force_login,
        "include_videos": include_videos,
    }
    if branch_id:
        body["branch_id"] = branch_id
    if filter_id:
        body["filter_id"] = filter_id

    result = await _call_session_manager("POST", "/scrape/vehicles", body)

    if "error" in result:
        return f"Error: {result['error']}"

    records = result.get("records", [])
    videos = result.get("side_artifacts", [])
    lines = [
        f"Scraped {result.get('count', len(records))} vehicles "
        f"(session {result.get('session_id', '?')}, run #{result.get('run_id', '?')})",
    ]
    if result.get("raw_path"):
        lines.append(f"Raw data: {result['raw_path']}")

    forward = result.get("forward_response")
    if forward:
        lines.append(
            f"Forwarded: added={forward.get('records_added', 0)}, total={forward.get('total_records', 0)}"
        )

    lines.append("")
    for i, record in enumerate(records, 1):
        lines.append(
            f"{i}. {record.get('VehicleName') or '(unnamed)'} "
            f"[{record.get('VehicleCD', '')}] - {record.get('Status') or 'N/A'}"
        )

    if videos:
        lines.append(f"\n{len(videos)} videos ready:")
        for video in videos:
            lines.append(
                f"- {video.get('vehicle_name', '')} ({video.get('event_type', '')}) "
                f"@ {video.get('dvr_datetime', '')}: {video.get('mp4_url', '')}"
            )

    return "\n".join(lines)


async def download_etc_csv(user_id: str, password: str, download_path: str = "") -> str:
    """Download the ETC usage-statement CSV for one account.

    Returns:
        Path and size of the saved CSV, or an error message.
    """
    body = {"user_id": user_id, "password": password}
    if download_path:
        body["download_path"] = download_path

    result = await _call_session_manager("POST", "/scrape/etc-csv", body)

    if "error" in result:
        return f"Error: {result['error']}"

    return (
        f"CSV saved to {result.get('csv_path', '?')} "
        f"({result.get('size_bytes', 0):,} bytes, run #{result.get('run_id', '?')})"
    )
