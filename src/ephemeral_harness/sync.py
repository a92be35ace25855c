"""Bounded polling between test assertions and asynchronous production.

The system under test acknowledges nothing: a request returns before its
effects exist. Polling a predicate is the only observation available from
outside. When a system can signal completion directly, prefer
``ResponseCaptureBuffer.wait_for_count`` or a similar blocking wait; this
module is the general fallback.

Every wait is bounded. A wait returns a ``WaitOutcome`` whether or not the
predicate was satisfied, so callers can assert on partial state::

    outcome = synchronizer.wait_for_effects(1, timeout=15)
    outcome.assert_satisfied("welcome message for S1")
    assert "Welcome" in outcome.snapshot[0].payload["text"]

Predicate errors count as "not yet". Only when every single poll in the
window raised the same error is that error reported on the outcome, which
separates "not ready yet" from "permanently broken".
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from .capture import CapturedEffect, ResponseCaptureBuffer
from .errors import WaitTimeout
from .observability import get_logger

logger = get_logger(__name__)

Predicate = Callable[[], Union[bool, Awaitable[bool]]]

DEFAULT_TIMEOUT = 15.0
DEFAULT_POLL_INTERVAL = 0.1

# Effects listed in a timeout diagnostic before truncation.
_DIAGNOSTIC_LIMIT = 20

# Time a predicate always gets, even when the deadline has already passed.
_MIN_PREDICATE_BUDGET = 0.05


class CancelToken:
    """Caller-owned signal that abandons an in-progress wait."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(seconds)


@dataclass(frozen=True, slots=True)
class WaitOutcome:
    """Result of a bounded wait. Always returned, never raised."""

    satisfied: bool
    elapsed: float
    snapshot: tuple[CapturedEffect, ...] = ()
    polls: int = 0
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def captured(self) -> int:
        return len(self.snapshot)

    def diagnostic(self, description: str = "") -> str:
        """Human-readable account of the wait, listing captured effects."""
        if self.satisfied:
            head = f"wait satisfied after {self.elapsed:.2f}s ({self.polls} polls)"
        elif self.cancelled:
            head = f"wait cancelled after {self.elapsed:.2f}s ({self.polls} polls)"
        else:
            head = f"wait timed out after {self.elapsed:.2f}s ({self.polls} polls)"
        if description:
            head = f"{head}: {description}"

        lines = [head, f"captured {self.captured} effect(s)"]
        for effect in self.snapshot[:_DIAGNOSTIC_LIMIT]:
            lines.append(
                f"  #{effect.sequence} {effect.timestamp.isoformat()} {effect.payload!r}"
            )
        if self.captured > _DIAGNOSTIC_LIMIT:
            lines.append(f"  ... {self.captured - _DIAGNOSTIC_LIMIT} more")
        if self.error is not None:
            lines.append(
                f"predicate failed on every poll: {type(self.error).__name__}: {self.error}"
            )
        return "\n".join(lines)

    def assert_satisfied(self, description: str = "") -> WaitOutcome:
        """Raise ``WaitTimeout`` unless the wait was satisfied."""
        if not self.satisfied:
            raise WaitTimeout(self, description=description)
        return self


class _ErrorTracker:
    """Tracks whether every poll so far raised the same error."""

    def __init__(self) -> None:
        self.last: Exception | None = None
        self._key: tuple[type, str] | None = None
        self.persistent = True

    def failed(self, exc: Exception) -> None:
        key = (type(exc), str(exc))
        if self._key is not None and key != self._key:
            self.persistent = False
        self._key = key
        self.last = exc

    def returned(self) -> None:
        self.persistent = False

    def surfaced(self) -> Exception | None:
        if self.persistent and self.last is not None:
            return self.last
        return None


class Synchronizer:
    """Polls predicates with a fixed interval inside a hard time bound.

    Args:
        capture: Buffer whose snapshot is attached to every outcome.
        timeout: Default bound when a call passes none.
        poll_interval: Default spacing between predicate evaluations.
    """

    def __init__(
        self,
        capture: ResponseCaptureBuffer | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if timeout <= 0 or poll_interval <= 0:
            raise ValueError("timeout and poll_interval must be > 0")
        self._capture = capture
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._last_outcome: WaitOutcome | None = None

    @property
    def last_outcome(self) -> WaitOutcome | None:
        """Most recent outcome, kept for suite-abort diagnostics."""
        return self._last_outcome

    def _resolve(
        self, timeout: float | None, poll_interval: float | None,
    ) -> tuple[float, float]:
        timeout = self._timeout if timeout is None else timeout
        poll_interval = self._poll_interval if poll_interval is None else poll_interval
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        return timeout, poll_interval

    def _snapshot(self) -> tuple[CapturedEffect, ...]:
        return self._capture.snapshot() if self._capture is not None else ()

    def _finish(
        self,
        *,
        satisfied: bool,
        start: float,
        polls: int,
        errors: _ErrorTracker,
        cancelled: bool = False,
    ) -> WaitOutcome:
        outcome = WaitOutcome(
            satisfied=satisfied,
            elapsed=time.monotonic() - start,
            snapshot=self._snapshot(),
            polls=polls,
            error=None if satisfied else errors.surfaced(),
            cancelled=cancelled,
        )
        self._last_outcome = outcome
        if not satisfied:
            logger.info(
                "wait_unsatisfied",
                elapsed=round(outcome.elapsed, 3),
                polls=polls,
                captured=outcome.captured,
                cancelled=cancelled,
                error=repr(outcome.error) if outcome.error else None,
            )
        return outcome

    # ── Blocking ───────────────────────────────────────────────────

    def wait_for(
        self,
        predicate: Callable[[], bool],
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        cancel: CancelToken | None = None,
    ) -> WaitOutcome:
        """Poll ``predicate`` until it is truthy or ``timeout`` elapses.

        The predicate runs on a worker thread, so a slow or hung predicate
        (a probe call stuck on its HTTP timeout, say) counts as "not yet"
        and cannot stretch the wait past its bound. At most one evaluation
        is in flight; an overrunning one is waited on again next turn
        instead of being stacked behind a fresh call.
        """
        timeout, poll_interval = self._resolve(timeout, poll_interval)
        start = time.monotonic()
        deadline = start + timeout
        errors = _ErrorTracker()
        polls = 0
        pending: Future | None = None
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="harness-wait")

        try:
            while True:
                if cancel is not None and cancel.cancelled:
                    return self._finish(
                        satisfied=False, start=start, polls=polls,
                        errors=errors, cancelled=True,
                    )
                if pending is None:
                    polls += 1
                    pending = executor.submit(predicate)
                budget = max(
                    deadline - time.monotonic(),
                    min(poll_interval, _MIN_PREDICATE_BUDGET),
                )
                done, _ = wait((pending,), timeout=min(budget, poll_interval))

                ok = False
                if done:
                    finished, pending = pending, None
                    try:
                        ok = bool(finished.result())
                    except Exception as exc:
                        errors.failed(exc)
                    else:
                        errors.returned()
                if ok:
                    return self._finish(satisfied=True, start=start, polls=polls, errors=errors)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if pending is not None:
                        logger.warning(
                            "wait_predicate_overran",
                            timeout=timeout,
                            polls=polls,
                        )
                    return self._finish(satisfied=False, start=start, polls=polls, errors=errors)
                if pending is not None:
                    # Still evaluating; go straight back to waiting on it.
                    continue
                delay = min(poll_interval, remaining)
                if cancel is not None:
                    cancel.sleep(delay)
                else:
                    time.sleep(delay)
        finally:
            # A hung predicate keeps its worker until it returns; the wait
            # itself does not block on it.
            executor.shutdown(wait=False, cancel_futures=True)

    def wait_for_effects(
        self,
        count: int,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        cancel: CancelToken | None = None,
    ) -> WaitOutcome:
        """Wait until the capture buffer holds at least ``count`` effects."""
        capture = self._require_capture()
        return self.wait_for(
            lambda: len(capture) >= count,
            timeout=timeout,
            poll_interval=poll_interval,
            cancel=cancel,
        )

    # ── Async ──────────────────────────────────────────────────────

    async def wait_for_async(
        self,
        predicate: Predicate,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        cancel: CancelToken | None = None,
    ) -> WaitOutcome:
        """Async twin of ``wait_for``.

        ``predicate`` may return a bool or an awaitable of one. Cancelling
        the awaiting task stops the loop at its next suspension point.
        """
        timeout, poll_interval = self._resolve(timeout, poll_interval)
        start = time.monotonic()
        deadline = start + timeout
        errors = _ErrorTracker()
        polls = 0

        while True:
            if cancel is not None and cancel.cancelled:
                return self._finish(
                    satisfied=False, start=start, polls=polls,
                    errors=errors, cancelled=True,
                )
            polls += 1
            try:
                result: Any = predicate()
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(
                        result, timeout=max(deadline - time.monotonic(), 0.001),
                    )
                ok = bool(result)
            except Exception as exc:
                errors.failed(exc)
                ok = False
            else:
                errors.returned()
            if ok:
                return self._finish(satisfied=True, start=start, polls=polls, errors=errors)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._finish(satisfied=False, start=start, polls=polls, errors=errors)
            await asyncio.sleep(min(poll_interval, remaining))

    async def wait_for_effects_async(
        self,
        count: int,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        cancel: CancelToken | None = None,
    ) -> WaitOutcome:
        capture = self._require_capture()
        return await self.wait_for_async(
            lambda: len(capture) >= count,
            timeout=timeout,
            poll_interval=poll_interval,
            cancel=cancel,
        )

    def _require_capture(self) -> ResponseCaptureBuffer:
        if self._capture is None:
            raise RuntimeError("Synchronizer has no capture buffer attached")
        return self._capture
