"""Capture buffer for outbound effects produced by the system under test.

The system under test calls ``record`` from whatever thread produced the
effect; test code reads through ``snapshot``. One condition variable guards
every operation, so a reader never sees a snapshot shorter than a previous
one unless ``clear`` ran in between.

Usage::

    buffer = ResponseCaptureBuffer()
    system.on_outbound_effect(buffer.record)
    ...
    effects = buffer.snapshot()
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True, slots=True)
class CapturedEffect:
    """One outbound effect, numbered by arrival order at the buffer."""

    sequence: int
    timestamp: datetime
    payload: Any

    def get(self, key: str, default: Any = None) -> Any:
        """Read ``key`` from a mapping payload."""
        if isinstance(self.payload, dict):
            return self.payload.get(key, default)
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


class ResponseCaptureBuffer:
    """Append-only, clearable record of outbound effects."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._effects: list[CapturedEffect] = []
        self._sequence = 0

    def record(self, payload: Any) -> CapturedEffect:
        """Append ``payload`` with the next sequence number."""
        with self._cond:
            self._sequence += 1
            effect = CapturedEffect(
                sequence=self._sequence,
                timestamp=datetime.now(timezone.utc),
                payload=payload,
            )
            self._effects.append(effect)
            self._cond.notify_all()
        return effect

    def snapshot(self) -> tuple[CapturedEffect, ...]:
        """Return the captured effects in arrival order."""
        with self._cond:
            return tuple(self._effects)

    def clear(self) -> None:
        """Drop all effects and reset the sequence counter to zero."""
        with self._cond:
            self._effects.clear()
            self._sequence = 0
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._effects)

    def for_subject(
        self, subject_id: str, *, key: str = "subject_id",
    ) -> tuple[CapturedEffect, ...]:
        """Return effects whose payload ``key`` equals ``subject_id``."""
        return tuple(e for e in self.snapshot() if e.get(key) == subject_id)

    def wait_for_count(self, count: int, timeout: float) -> bool:
        """Block until at least ``count`` effects are held or ``timeout`` passes.

        This is the notification path: ``record`` wakes waiters directly, so
        no polling interval is involved. Returns whether the count was reached.
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._cond:
            while len(self._effects) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True
