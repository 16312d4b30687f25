"""Async bridge: make callback-style page bindings awaitable.

The host has no subscription into arbitrary page-side callback invocations,
so every bridged call works through a rendezvous slot:

1. One evaluation allocates ``window.__bridgeSlots[token]`` and invokes the
   binding with callbacks that write their full argument list into the slot.
2. The slot is polled by re-evaluating script until it reports completion or
   the deadline passes.
3. The slot is released once consumed. On timeout it is abandoned; the page
   may still invoke the callback later, and that late write only ever lands
   in the abandoned slot.

Each call gets its own token, so a slow earlier call can never be read as the
result of a later one.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ExtractionFailed, RemoteCallFailed, RemoteCallTimedOut
from .surface import RemoteSurface
from .timing import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

DEFAULT_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 0.5

_INITIATE_TEMPLATE = """/*bridge:initiate:%(token)s*/
(() => {
    const slots = window.__bridgeSlots = window.__bridgeSlots || {};
    const slot = slots[%(token_js)s] = {completed: false, result: null, error: null};
    const settle = (key) => function () {
        if (slot.completed) { return; }
        slot[key] = Array.prototype.slice.call(arguments);
        slot.completed = true;
    };
    let owner = window;
    let fn = window;
    for (const part of %(path_js)s) {
        owner = fn;
        fn = (fn === undefined || fn === null) ? undefined : fn[part];
    }
    if (typeof fn !== 'function') {
        slot.error = ['binding not available: ' + %(target_js)s];
        slot.unavailable = true;
        slot.completed = true;
        return 'not_available';
    }
    const callArgs = %(args_js)s.concat([settle('result')]);
    if (%(with_failure)s) { callArgs.push(settle('error')); }
    try {
        fn.apply(owner, callArgs);
    } catch (e) {
        if (!slot.completed) {
            slot.error = [String((e && e.message) || e)];
            slot.completed = true;
        }
    }
    return 'initiated';
})()"""

_POLL_TEMPLATE = """/*bridge:poll:%(token)s*/
(() => {
    const slot = window.__bridgeSlots && window.__bridgeSlots[%(token_js)s];
    return slot ? JSON.stringify(slot) : null;
})()"""

_RELEASE_TEMPLATE = """/*bridge:release:%(token)s*/
(() => {
    if (window.__bridgeSlots) { delete window.__bridgeSlots[%(token_js)s]; }
    return true;
})()"""


def initiate_script(token: str, target: str, args: list, failure_callback: bool) -> str:
    return _INITIATE_TEMPLATE % {
        "token": token,
        "token_js": json.dumps(token),
        "path_js": json.dumps(target.split(".")),
        "target_js": json.dumps(target),
        "args_js": json.dumps(args),
        "with_failure": "true" if failure_callback else "false",
    }


def poll_script(token: str) -> str:
    return _POLL_TEMPLATE % {"token": token, "token_js": json.dumps(token)}


def release_script(token: str) -> str:
    return _RELEASE_TEMPLATE % {"token": token, "token_js": json.dumps(token)}


@dataclass
class CallbackResult:
    """Arguments a binding passed to its callback, uninterpreted.

    Bindings differ in callback arity (one, two or five positional values are
    all seen in practice), so the bridge never assumes a shape. Site code
    picks the values it needs.
    """

    outcome: str
    args: list = field(default_factory=list)

    def arg(self, index: int, default: Any = None) -> Any:
        if 0 <= index < len(self.args):
            return self.args[index]
        return default

    def json_arg(self, index: int, default: Any = None) -> Any:
        """Decode a positional argument that carries a JSON document as text."""
        value = self.arg(index)
        if value is None:
            return default
        if not isinstance(value, str):
            return value
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ExtractionFailed(
                f"callback argument {index} is not valid JSON: {e}", phase="bridge"
            ) from e


@dataclass
class PendingCall:
    token: str
    target: str
    deadline: float
    result_slot: Optional[list] = None
    error_slot: Optional[list] = None
    completed: bool = False

    def complete(self, result: Optional[list] = None, error: Optional[list] = None) -> None:
        if self.completed:
            raise RuntimeError(f"pending call {self.token} already completed")
        if result is not None and error is not None:
            raise ValueError("a call completes with a result or an error, not both")
        self.result_slot = result
        self.error_slot = error
        self.completed = True


class AsyncBridge:
    """Bridged calls against one page. One bridge per surface."""

    def __init__(
        self,
        surface: RemoteSurface,
        clock: Optional[Clock] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self._surface = surface
        self._clock = clock or SYSTEM_CLOCK
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingCall] = {}
        self._abandoned: dict[str, PendingCall] = {}
        self._release_queue: list[str] = []

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    @property
    def abandoned_tokens(self) -> list[str]:
        return list(self._abandoned)

    async def call(
        self,
        target: str,
        *args: Any,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        failure_callback: bool = True,
    ) -> CallbackResult:
        """Invoke ``target`` (a dotted path under ``window``) and await its callback.

        ``args`` are passed as JSON values ahead of the callbacks. With
        ``failure_callback=False`` only a success callback is appended, for
        bindings that take a single completion function.
        """
        timeout = self._default_timeout if timeout is None else timeout
        interval = self._poll_interval if poll_interval is None else poll_interval

        await self.sweep()

        token = uuid.uuid4().hex
        pending = PendingCall(token=token, target=target, deadline=self._clock.monotonic() + timeout)
        self._pending[token] = pending

        try:
            status = await self._surface.evaluate(
                initiate_script(token, target, list(args), failure_callback)
            )
            logger.info(f"[BRIDGE] {target} {status} (token={token[:8]})")

            while True:
                slot = await self._read_slot(token)
                if slot is None:
                    raise RemoteCallFailed(
                        f"{target}: rendezvous slot disappeared (page navigated?)", phase="bridge"
                    )
                if slot.get("completed"):
                    return self._consume(pending, slot)

                if self._clock.monotonic() >= pending.deadline:
                    self._abandoned[token] = pending
                    logger.warning(f"[BRIDGE] {target} timed out after {timeout}s (token={token[:8]})")
                    raise RemoteCallTimedOut(
                        f"{target}: no callback within {timeout}s", phase="bridge"
                    )
                await self._clock.sleep(interval)
        finally:
            self._pending.pop(token, None)

    def _consume(self, pending: PendingCall, slot: dict) -> CallbackResult:
        error = slot.get("error")
        result = slot.get("result")
        if error is not None:
            pending.complete(error=list(error) if isinstance(error, list) else [error])
        else:
            pending.complete(result=list(result) if isinstance(result, list) else [result])

        # Release is best-effort; the slot is already consumed on this side.
        self._schedule_release(pending.token)

        if pending.error_slot is not None:
            message = pending.error_slot[0] if pending.error_slot else "unknown error"
            raise RemoteCallFailed(
                f"{pending.target}: {message}",
                phase="bridge",
                args=pending.error_slot,
                binding_unavailable=bool(slot.get("unavailable")),
            )
        return CallbackResult(outcome="success", args=pending.result_slot or [])

    def _schedule_release(self, token: str) -> None:
        self._release_queue.append(token)

    async def _read_slot(self, token: str) -> Optional[dict]:
        raw = await self._surface.evaluate(poll_script(token))
        if raw is None:
            return None
        if isinstance(raw, dict):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug(f"[BRIDGE] Unreadable slot payload for {token[:8]}: {raw!r}")
            return {"completed": False}

    async def sweep(self) -> None:
        """Release consumed slots and log late completions of abandoned calls."""
        for token in self._release_queue:
            try:
                await self._surface.evaluate(release_script(token))
            except Exception as e:
                logger.debug(f"[BRIDGE] Failed to release slot {token[:8]}: {e}")
        self._release_queue = []

        for token, pending in list(self._abandoned.items()):
            try:
                slot = await self._read_slot(token)
            except Exception as e:
                logger.debug(f"[BRIDGE] Could not inspect abandoned slot {token[:8]}: {e}")
                continue
            if slot is None:
                del self._abandoned[token]
            elif slot.get("completed"):
                logger.info(
                    f"[BRIDGE] Late completion of {pending.target} (token={token[:8]}) ignored"
                )
                del self._abandoned[token]
                try:
                    await self._surface.evaluate(release_script(token))
                except Exception as e:
                    logger.debug(f"[BRIDGE] Failed to release slot {token[:8]}: {e}")


async def evaluate_json(surface: RemoteSurface, script: str, phase: str = "evaluate") -> Any:
    """Evaluate a script that returns a JSON document as text and decode it."""
    raw = await surface.evaluate(script)
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionFailed(f"malformed JSON payload: {e}", phase=phase) from e
