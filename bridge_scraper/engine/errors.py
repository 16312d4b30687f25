"""Error taxonomy for remote-interaction failures.

Structural failures (the target application no longer looks like we expect)
are never retried. Transient failures carry ``retryable = True`` and are
retried by :class:`~bridge_scraper.engine.retry.RetryExecutor`.
"""

from __future__ import annotations

from typing import Optional


class ScraperError(Exception):
    """Base class for every failure raised by the engine and session layer."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str = "", *, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "phase": self.phase}


class BrowserInitFailed(ScraperError):
    code = "browser_init_failed"
    retryable = True


class NavigationFailed(ScraperError):
    code = "navigation_failed"
    retryable = True


class ElementNotFound(ScraperError):
    code = "element_not_found"


class LoginFailed(ScraperError):
    code = "login_failed"


class SessionExpired(ScraperError):
    code = "session_expired"


class ScriptFailed(ScraperError):
    """A script evaluation was rejected by the page."""

    code = "script_failed"


class RemoteCallFailed(ScraperError):
    """The remote binding invoked its failure callback."""

    code = "remote_call_failed"

    def __init__(
        self,
        message: str = "",
        *,
        phase: Optional[str] = None,
        args: Optional[list] = None,
        binding_unavailable: bool = False,
    ):
        super().__init__(message, phase=phase)
        self.callback_args = list(args or [])
        self.binding_unavailable = binding_unavailable


class RemoteCallTimedOut(ScraperError):
    """No callback was observed before the deadline.

    The remote side may still complete later; a timeout is not proof that it
    won't.
    """

    code = "remote_call_timed_out"
    retryable = True


class ExtractionFailed(ScraperError):
    code = "extraction_failed"


class DownloadTimedOut(ScraperError):
    code = "download_timed_out"


class NoDataAvailable(ScraperError):
    code = "no_data_available"


class ForwardingFailed(ScraperError):
    code = "forwarding_failed"
    retryable = True


class RetriesExhausted(ScraperError):
    code = "retries_exhausted"

    def __init__(self, count: int, last_message: str, *, phase: Optional[str] = None):
        super().__init__(
            f"gave up after {count} retries: {last_message}", phase=phase
        )
        self.count = count
        self.last_message = last_message

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retries"] = self.count
        data["last_message"] = self.last_message
        return data


def is_retryable(exc: BaseException) -> bool:
    """Default retryability predicate used by the retry executor."""
    return isinstance(exc, ScraperError) and exc.retryable


__all__ = [
    "ScraperError",
    "BrowserInitFailed",
    "NavigationFailed",
    "ElementNotFound",
    "LoginFailed",
    "SessionExpired",
    "ScriptFailed",
    "RemoteCallFailed",
    "RemoteCallTimedOut",
    "ExtractionFailed",
    "DownloadTimedOut",
    "NoDataAvailable",
    "ForwardingFailed",
    "RetriesExhausted",
    "is_retryable",
]
