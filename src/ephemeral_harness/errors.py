"""Harness error hierarchy.

Errors split into two propagation classes:

- Infrastructure failures (``BindFailure``, ``PurgeFailure``) abort the
  whole suite. A leaked server or a contaminated store invalidates every
  test that would run after it.
- Behavioral failures (``WaitTimeout``, ``SeedFailure`` for one test case)
  surface as ordinary test failures and the suite moves on to the next
  isolated test.

Store errors carry the table, a message and an optional backend detail as
plain attributes, never live connections or cursors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .sync import WaitOutcome


class HarnessError(Exception):
    """Base class for every error raised by the harness."""


# ── Infrastructure (suite-fatal) ────────────────────────────────────


class BindFailure(HarnessError):
    """The listener could not bind or never started accepting connections."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"cannot serve on {host}:{port}: {reason}")


class PurgeFailure(HarnessError):
    """Namespace purge failed or left records behind."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        self.table = table
        super().__init__(message)


class SuiteAborted(HarnessError):
    """The suite hit an infrastructure failure and cannot run more tests."""

    def __init__(self, reason: str, *, diagnostic: str = "") -> None:
        self.reason = reason
        self.diagnostic = diagnostic
        message = reason
        if diagnostic:
            message = f"{reason}\n{diagnostic}"
        super().__init__(message)


# ── Test-scoped ─────────────────────────────────────────────────────


class SeedFailure(HarnessError):
    """Fixture insertion failed; the current test must not reach assertions."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        self.table = table
        super().__init__(message)


class WaitTimeout(HarnessError, AssertionError):
    """A bounded wait ended unsatisfied.

    Subclasses ``AssertionError`` so test runners report it as a failed
    assertion rather than an error. The message lists what *was* captured.
    """

    def __init__(self, outcome: WaitOutcome, *, description: str = "") -> None:
        self.outcome = outcome
        self.description = description
        super().__init__(outcome.diagnostic(description))


class ProbeUnreachable(HarnessError):
    """The probe surface could not be reached over HTTP."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"probe unreachable at {url}: {reason}")


class ConcurrentTestError(HarnessError):
    """A test case was entered while another one was still running."""


# ── Configuration ───────────────────────────────────────────────────


class NamespaceConfigError(HarnessError, ValueError):
    """Namespace prefix is malformed or overlaps an active namespace."""


class NamespaceViolation(HarnessError):
    """An operation targeted a record outside the test namespace."""

    def __init__(self, value: str, prefix: str) -> None:
        self.value = value
        self.prefix = prefix
        super().__init__(f"{value!r} is outside test namespace {prefix!r}")


class InvalidStateTransition(HarnessError, ValueError):
    """Raised for invalid server lifecycle transitions."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"invalid state transition: {from_state!r} -> {to_state!r}"
        )


# ── Store ───────────────────────────────────────────────────────────


class StoreError(Exception):
    """Base error for backing-store operations."""

    def __init__(
        self, *, table: str, message: str, detail: str | None = None,
    ) -> None:
        self.table = table
        self.message = message
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        bits = [f"{type(self).__name__}(table={self.table})", self.message]
        if self.detail:
            bits.append(f"detail={self.detail}")
        return " ".join(bits)


class StoreConflictError(StoreError):
    """Insert collided with an existing primary key."""


class StoreIntegrityError(StoreError):
    """Delete or insert would break a parent/child reference."""
