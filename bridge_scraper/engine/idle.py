"""Idle detection: decide when a remotely rendered page has settled.

Single reads are unreliable against pages that render in bursts, so both
checks require a run of consecutive identical observations. Both waits are
advisory: a timeout is logged as degraded and reported as ``False``, never
raised, because the page's instrumentation may be incomplete or absent.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Optional

from .errors import ScraperError
from .surface import RemoteSurface
from .timing import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

NETWORK_IDLE_TIMEOUT = 30.0
NETWORK_IDLE_CHECK_INTERVAL = 0.5
DOM_STABLE_TIMEOUT = 10.0
DOM_STABLE_CHECK_INTERVAL = 0.3
REQUIRED_CONSECUTIVE_CHECKS = 3

# Resource loads started in the last 500ms that have not finished, plus the
# page's own pending-request counter when it exposes one.
NETWORK_ACTIVITY_SCRIPT = """
(() => {
    const now = performance.now();
    const inFlight = performance.getEntriesByType('resource')
        .filter(e => (now - e.startTime) < 500 && e.duration === 0).length;
    const pending = Number(window.__pendingRequests) || 0;
    return {inFlight: inFlight, pending: pending};
})()
"""

BODY_LENGTH_SCRIPT = "document.body ? document.body.outerHTML.length : 0"


@dataclass
class IdleState:
    window_start: float
    consecutive_idle_checks: int = 0
    consecutive_stable_checks: int = 0
    last_length: Optional[int] = None


def _is_idle(reading) -> bool:
    if isinstance(reading, bool):
        return reading
    if not isinstance(reading, dict):
        return False
    return int(reading.get("inFlight") or 0) == 0 and int(reading.get("pending") or 0) == 0


async def await_network_idle(
    surface: RemoteSurface,
    timeout: float = NETWORK_IDLE_TIMEOUT,
    check_interval: float = NETWORK_IDLE_CHECK_INTERVAL,
    required_idle_checks: int = REQUIRED_CONSECUTIVE_CHECKS,
    clock: Optional[Clock] = None,
) -> bool:
    """Wait until ``required_idle_checks`` consecutive polls observe no network activity."""
    clock = clock or SYSTEM_CLOCK
    state = IdleState(window_start=clock.monotonic())
    logger.debug("Waiting for network to become idle...")

    while clock.monotonic() - state.window_start < timeout:
        try:
            reading = await surface.evaluate(NETWORK_ACTIVITY_SCRIPT)
        except ScraperError as e:
            logger.debug(f"Network idle check error: {e}")
            reading = None

        if _is_idle(reading):
            state.consecutive_idle_checks += 1
            if state.consecutive_idle_checks >= required_idle_checks:
                logger.info(
                    f"Network idle after {clock.monotonic() - state.window_start:.1f}s "
                    f"({state.consecutive_idle_checks} consecutive checks)"
                )
                return True
        else:
            state.consecutive_idle_checks = 0

        await clock.sleep(check_interval)

    logger.warning(
        f"Network idle timeout after {clock.monotonic() - state.window_start:.1f}s, "
        "proceeding anyway (degraded)"
    )
    return False


async def await_dom_stable(
    surface: RemoteSurface,
    timeout: float = DOM_STABLE_TIMEOUT,
    check_interval: float = DOM_STABLE_CHECK_INTERVAL,
    required_stable_checks: int = REQUIRED_CONSECUTIVE_CHECKS,
    clock: Optional[Clock] = None,
) -> bool:
    """Wait until the serialized body length stays unchanged across consecutive polls."""
    clock = clock or SYSTEM_CLOCK
    state = IdleState(window_start=clock.monotonic())
    logger.debug("Waiting for page to stabilize...")

    while clock.monotonic() - state.window_start < timeout:
        try:
            length = int(await surface.evaluate(BODY_LENGTH_SCRIPT) or 0)
        except (ScraperError, TypeError, ValueError) as e:
            logger.debug(f"Page stable check error: {e}")
            state.consecutive_stable_checks = 0
            state.last_length = None
        else:
            if state.last_length is not None and length == state.last_length:
                state.consecutive_stable_checks += 1
                if state.consecutive_stable_checks >= required_stable_checks:
                    logger.info(
                        f"Page stable after {clock.monotonic() - state.window_start:.1f}s "
                        f"({state.consecutive_stable_checks} consecutive checks)"
                    )
                    return True
            else:
                state.consecutive_stable_checks = 0
            state.last_length = length

        await clock.sleep(check_interval)

    logger.warning(
        f"Page stable timeout after {clock.monotonic() - state.window_start:.1f}s, "
        "proceeding anyway (degraded)"
    )
    return False


async def await_settled(surface: RemoteSurface, clock: Optional[Clock] = None) -> None:
    """Network idle followed by DOM stable, both with default bounds."""
    await await_network_idle(surface, clock=clock)
    await await_dom_stable(surface, clock=clock)
