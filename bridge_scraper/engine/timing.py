"""Clock abstraction and the shared poll-until-condition primitive."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional


class Clock:
    """Monotonic time source plus a non-blocking sleep.

    Every bounded wait in the engine goes through a Clock so tests can drive
    timing with a simulated one.
    """

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    clock: Optional[Clock] = None,
) -> bool:
    """Evaluate ``check`` every ``interval`` seconds until it returns True.

    Returns False once ``timeout`` seconds have elapsed. The check always runs
    at least once. Exceptions raised by ``check`` propagate.
    """
    clock = clock or SYSTEM_CLOCK
    deadline = clock.monotonic() + timeout
    while True:
        if await check():
            return True
        if clock.monotonic() + interval > deadline:
            return False
        await clock.sleep(interval)


async def poll_attempts(
    check: Callable[[], Awaitable[bool]],
    attempts: int,
    interval: float,
    clock: Optional[Clock] = None,
) -> bool:
    """Run ``check`` up to ``attempts`` times, sleeping ``interval`` between runs."""
    clock = clock or SYSTEM_CLOCK
    for attempt in range(attempts):
        if await check():
            return True
        if attempt < attempts - 1:
            await clock.sleep(interval)
    return False
