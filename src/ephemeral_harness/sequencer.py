"""Suite and test-case sequencing.

Once per suite, in strict order::

    validate namespace -> purge -> seed -> start server
    ... tests ...
    purge -> stop server          (on every exit path)

Around every test case::

    clear capture -> purge -> seed -> test body -> purge

Test cases run strictly one at a time: they share one namespace and one
capture buffer, and interleaving them would produce cross-test interference
indistinguishable from a real defect. Entering a second test case while one
is active raises ``ConcurrentTestError``.

Purge failures abort the suite (``SuiteAborted``); seed failures fail only
the current test case.

Usage::

    sequencer = SuiteSequencer(target, settings=settings)
    with sequencer.suite() as session:
        with session.test_case("welcome") as h:
            h.client.send(h.subject("S1"), "hello")
            h.sync.wait_for_effects(1).assert_satisfied()
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from .capture import ResponseCaptureBuffer
from .errors import (
    BindFailure,
    ConcurrentTestError,
    PurgeFailure,
    SeedFailure,
    SuiteAborted,
)
from .isolation import DataIsolationManager, FixtureSet
from .namespace import NamespaceRegistry, TestNamespace, registry
from .observability import get_logger, set_test_case
from .probe import ProbeClient, create_harness_app
from .protocols import NamespacedStore, SystemUnderTest
from .server import ServerConfig, ServerLifecycle
from .settings import HarnessSettings
from .store.schema import StoreSchema
from .sync import Synchronizer

logger = get_logger(__name__)


class CaseOutcome(str, Enum):
    """Outcome of a single test case."""

    PASS = 'pass'
    FAIL = 'fail'
    ERROR = 'error'
    ABORTED = 'aborted'


@dataclass(frozen=True, slots=True)
class CaseResult:
    """Result of one sequenced test case."""

    name: str
    outcome: CaseOutcome
    started_at: str  # ISO-8601
    duration_ms: float
    error_detail: str | None = None
    wait_diagnostic: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == CaseOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'name': self.name,
            'outcome': self.outcome.value,
            'started_at': self.started_at,
            'duration_ms': round(self.duration_ms, 2),
        }
        if self.error_detail:
            result['error_detail'] = self.error_detail
        if self.wait_diagnostic:
            result['wait_diagnostic'] = self.wait_diagnostic
        return result


@dataclass
class HarnessTarget:
    """A system under test together with the store it writes to."""

    system: SystemUnderTest
    store: NamespacedStore
    schema: StoreSchema
    fixtures: FixtureSet = field(default_factory=FixtureSet.empty)

    def close(self) -> None:
        close = getattr(self.system, 'close', None)
        if callable(close):
            close()
        self.store.close()


class HarnessSession:
    """What test code works with while a suite is running."""

    def __init__(self, sequencer: SuiteSequencer, client: ProbeClient) -> None:
        self._sequencer = sequencer
        self.client = client

    @property
    def namespace(self) -> TestNamespace:
        return self._sequencer.namespace

    @property
    def capture(self) -> ResponseCaptureBuffer:
        return self._sequencer.capture

    @property
    def sync(self) -> Synchronizer:
        return self._sequencer.synchronizer

    @property
    def isolation(self) -> DataIsolationManager:
        return self._sequencer.isolation

    @property
    def store(self) -> NamespacedStore:
        return self._sequencer.target.store

    @property
    def base_url(self) -> str:
        return self._sequencer.lifecycle.base_url

    @property
    def results(self) -> tuple[CaseResult, ...]:
        return self._sequencer.results

    def subject(self, local_id: str) -> str:
        """Qualify ``local_id`` into the suite namespace."""
        return self.namespace.qualify(local_id)

    def test_case(
        self, name: str, fixtures: FixtureSet | None = None,
    ):
        return self._sequencer.test_case(name, fixtures)

    def record_outcome(self, outcome: CaseOutcome | str, detail: str | None = None) -> None:
        self._sequencer.record_outcome(outcome, detail)


class SuiteSequencer:
    """Orchestrates suite setup/teardown and sequential test cases.

    Args:
        target: System under test, its store and schema, default fixtures.
        settings: Harness settings. Defaults to ``HarnessSettings()``.
        capture: Capture buffer (a fresh one by default).
        namespaces: Registry used to reject overlapping active namespaces.
    """

    def __init__(
        self,
        target: HarnessTarget,
        *,
        settings: HarnessSettings | None = None,
        capture: ResponseCaptureBuffer | None = None,
        namespaces: NamespaceRegistry | None = None,
    ) -> None:
        settings = settings or HarnessSettings()
        errors = settings.validate()
        if errors:
            raise ValueError(
                "Harness settings validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )

        self.settings = settings
        self.target = target
        self.namespace = TestNamespace(settings.namespace_prefix)
        self.capture = capture or ResponseCaptureBuffer()
        self.synchronizer = Synchronizer(
            self.capture,
            timeout=settings.wait_timeout,
            poll_interval=settings.poll_interval,
        )
        self.isolation = DataIsolationManager(target.store, target.schema, self.namespace)
        self.app = create_harness_app(target.system, self.isolation)
        self.lifecycle = ServerLifecycle(self.app)

        self._namespaces = namespaces or registry
        self._hooked = False
        self._client: ProbeClient | None = None
        self._case_lock = threading.Lock()
        self._active_case: str | None = None
        self._explicit_outcome: tuple[CaseOutcome, str | None] | None = None
        self._results: list[CaseResult] = []
        self._abort_reason: str | None = None

    @property
    def results(self) -> tuple[CaseResult, ...]:
        return tuple(self._results)

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    def _diagnostic(self) -> str:
        outcome = self.synchronizer.last_outcome
        if outcome is None:
            return ""
        return f"last wait outcome:\n{outcome.diagnostic()}"

    def _abort(self, reason: str, exc: BaseException) -> SuiteAborted:
        self._abort_reason = reason
        logger.error("suite_aborted", reason=reason, error=str(exc))
        return SuiteAborted(reason, diagnostic=self._diagnostic())

    # ── Suite ──────────────────────────────────────────────────────

    @contextmanager
    def suite(self) -> Iterator[HarnessSession]:
        """Run suite setup, yield a session, and always tear down.

        Raises:
            NamespaceConfigError: If the namespace overlaps an active suite.
            SuiteAborted: On bind, purge or suite-level seed failure.
        """
        self._namespaces.acquire(self.namespace)
        try:
            if not self._hooked:
                self.target.system.on_outbound_effect(self.capture.record)
                self._hooked = True

            try:
                self._setup()
                self._client = ProbeClient(
                    self.lifecycle.base_url, timeout=self.settings.probe_timeout,
                )
                yield HarnessSession(self, self._client)
            finally:
                if self._client is not None:
                    self._client.close()
                    self._client = None
                self._teardown()
        finally:
            self._namespaces.release(self.namespace)

    def _setup(self) -> None:
        logger.info("suite_setup", namespace=self.namespace.prefix)
        uncovered = self.isolation.uncovered_tables()
        if uncovered:
            logger.warning("tables_outside_purge", tables=uncovered)
        try:
            self.isolation.purge()
        except PurgeFailure as exc:
            raise self._abort("suite purge failed", exc) from exc
        try:
            self.isolation.seed(self.target.fixtures)
        except SeedFailure as exc:
            raise self._abort("suite seed failed", exc) from exc
        try:
            self.lifecycle.start(ServerConfig.from_settings(self.settings))
        except BindFailure as exc:
            raise self._abort("server failed to start", exc) from exc

    def _teardown(self) -> None:
        purge_error: PurgeFailure | None = None
        try:
            self.isolation.purge()
        except PurgeFailure as exc:
            purge_error = exc
        finally:
            self.lifecycle.stop()
            set_test_case(None)
        logger.info("suite_teardown", cases=len(self._results))
        if purge_error is not None:
            raise self._abort("teardown purge failed", purge_error) from purge_error

    # ── Test cases ─────────────────────────────────────────────────

    @contextmanager
    def test_case(
        self, name: str, fixtures: FixtureSet | None = None,
    ) -> Iterator[HarnessSession]:
        """Isolate one test case: clear, reset, run, purge.

        Raises:
            SuiteAborted: If the suite was already aborted or a purge fails.
            ConcurrentTestError: If another test case is running.
            SeedFailure: If fixtures cannot be inserted; the body never runs.
        """
        if self._abort_reason is not None:
            raise SuiteAborted(self._abort_reason, diagnostic=self._diagnostic())
        client = self._session_client()
        if not self._case_lock.acquire(blocking=False):
            raise ConcurrentTestError(
                f"test case {name!r} entered while {self._active_case!r} is running"
            )

        self._active_case = name
        self._explicit_outcome = None
        set_test_case(name)
        started_at = datetime.now(timezone.utc).isoformat()
        start = time.monotonic()
        outcome = CaseOutcome.PASS
        detail: str | None = None
        waits_before = self.synchronizer.last_outcome
        try:
            self.capture.clear()
            try:
                self.isolation.reset(
                    fixtures if fixtures is not None else self.target.fixtures,
                )
            except PurgeFailure as exc:
                raise self._abort(f"purge before {name!r} failed", exc) from exc
            yield HarnessSession(self, client)
        except SuiteAborted as exc:
            outcome, detail = CaseOutcome.ABORTED, str(exc)
            raise
        except AssertionError as exc:
            outcome, detail = CaseOutcome.FAIL, str(exc)
            raise
        except BaseException as exc:
            outcome, detail = CaseOutcome.ERROR, f"{type(exc).__name__}: {exc}"
            raise
        finally:
            try:
                cleanup_error = self._after_case(name)
                if self._explicit_outcome is not None and outcome == CaseOutcome.PASS:
                    outcome, detail = self._explicit_outcome
                if cleanup_error is not None:
                    outcome, detail = CaseOutcome.ABORTED, str(cleanup_error)
                last = self.synchronizer.last_outcome
                self._results.append(CaseResult(
                    name=name,
                    outcome=outcome,
                    started_at=started_at,
                    duration_ms=(time.monotonic() - start) * 1000,
                    error_detail=detail,
                    wait_diagnostic=(
                        last.diagnostic()
                        if last is not None and last is not waits_before and not last.satisfied
                        else None
                    ),
                ))
                logger.info("case_finished", case=name, outcome=outcome.value)
            finally:
                self._active_case = None
                set_test_case(None)
                self._case_lock.release()
            if cleanup_error is not None:
                raise cleanup_error

    def _after_case(self, name: str) -> SuiteAborted | None:
        try:
            self.isolation.purge()
        except PurgeFailure as exc:
            return self._abort(f"purge after {name!r} failed", exc)
        return None

    def record_outcome(self, outcome: CaseOutcome | str, detail: str | None = None) -> None:
        """Record the active case's outcome when it was decided elsewhere.

        Used by runners (such as pytest) that do not propagate test failures
        through the ``test_case`` context.
        """
        self._explicit_outcome = (CaseOutcome(outcome), detail)

    def _session_client(self) -> ProbeClient:
        # One client per suite, shared by its cases.
        if self._client is None:
            raise RuntimeError("test_case() must run inside suite()")
        return self._client
