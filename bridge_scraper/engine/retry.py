"""Bounded exponential backoff around fallible async operations."""

from __future__ import annotations

import logging
import random
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RetriesExhausted, is_retryable
from .timing import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

T = TypeVar("T")

MAX_RETRIES = 3
INITIAL_BACKOFF_MS = 1000


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[BaseException] = None


def compute_backoff_ms(attempt: int, initial_backoff_ms: int, jitter_ratio: float = 0.0) -> float:
    """Delay before retrying after failed attempt ``attempt`` (0-based)."""
    delay = float(initial_backoff_ms * 2 ** attempt)
    if jitter_ratio > 0:
        delay += random.uniform(0, delay * jitter_ratio)
    return delay


class RetryExecutor:
    """Retries an operation while its failures are retryable.

    ``max_retries`` counts retries, not attempts: the operation runs at most
    ``max_retries + 1`` times.
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        initial_backoff_ms: int = INITIAL_BACKOFF_MS,
        is_retryable: Callable[[BaseException], bool] = is_retryable,
        jitter_ratio: float = 0.0,
        clock: Optional[Clock] = None,
        label: str = "operation",
    ):
        self.max_retries = max_retries
        self.initial_backoff_ms = initial_backoff_ms
        self.is_retryable = is_retryable
        self.jitter_ratio = jitter_ratio
        self.label = label
        self._clock = clock or SYSTEM_CLOCK

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        state = RetryState()
        while True:
            try:
                return await operation()
            except Exception as e:
                state.last_error = e
                if not self.is_retryable(e):
                    logger.info(f"[RETRY] {self.label} failed with non-retryable error: {e}")
                    raise
                if state.attempt >= self.max_retries:
                    logger.error(
                        f"[RETRY] {self.label} failed after {self.max_retries} retries: {e}"
                    )
                    raise RetriesExhausted(self.max_retries, str(e), phase=self.label) from e

                backoff_ms = compute_backoff_ms(
                    state.attempt, self.initial_backoff_ms, self.jitter_ratio
                )
                logger.warning(
                    f"[RETRY] {self.label} attempt {state.attempt + 1} failed, "
                    f"retrying in {backoff_ms:.0f}ms: {e}"
                )
                await self._clock.sleep(backoff_ms / 1000)
                state.attempt += 1


async def execute(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = MAX_RETRIES,
    initial_backoff_ms: int = INITIAL_BACKOFF_MS,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    clock: Optional[Clock] = None,
) -> T:
    """Functional shorthand for ``RetryExecutor(...).execute(operation)``."""
    executor = RetryExecutor(
        max_retries=max_retries,
        initial_backoff_ms=initial_backoff_ms,
        is_retryable=is_retryable,
        clock=clock,
    )
    return await executor.execute(operation)
