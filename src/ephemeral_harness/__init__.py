"""Ephemeral integration-test harness.

Runs a system under test behind a short-lived HTTP listener, keeps every
test-owned record inside a namespace it can purge, captures the system's
outbound effects, and waits on them with bounded polling.

Quick start::

    from ephemeral_harness import HarnessTarget, SuiteSequencer
    from ephemeral_harness.reference import harness_target

    sequencer = SuiteSequencer(harness_target())
    with sequencer.suite() as session:
        with session.test_case("welcome") as h:
            h.client.send(h.subject("S1"), "hello")
            h.sync.wait_for_effects(1).assert_satisfied()
"""

from .capture import CapturedEffect, ResponseCaptureBuffer
from .errors import (
    BindFailure,
    ConcurrentTestError,
    HarnessError,
    NamespaceConfigError,
    NamespaceViolation,
    ProbeUnreachable,
    PurgeFailure,
    SeedFailure,
    SuiteAborted,
    WaitTimeout,
)
from .isolation import DataIsolationManager, FixtureSet, PurgeReport
from .namespace import TestNamespace
from .observability import configure_logging, get_logger
from .probe import AsyncProbeClient, ProbeClient, create_harness_app
from .protocols import NamespacedStore, StateSnapshot, SystemUnderTest
from .report import SuiteReport
from .sequencer import (
    CaseOutcome,
    CaseResult,
    HarnessSession,
    HarnessTarget,
    SuiteSequencer,
)
from .server import ServerConfig, ServerLifecycle, ServerState
from .settings import HarnessSettings
from .sync import CancelToken, Synchronizer, WaitOutcome

__all__ = [
    "AsyncProbeClient",
    "BindFailure",
    "CancelToken",
    "CapturedEffect",
    "CaseOutcome",
    "CaseResult",
    "ConcurrentTestError",
    "DataIsolationManager",
    "FixtureSet",
    "HarnessError",
    "HarnessSession",
    "HarnessSettings",
    "HarnessTarget",
    "NamespaceConfigError",
    "NamespaceViolation",
    "NamespacedStore",
    "ProbeClient",
    "ProbeUnreachable",
    "PurgeFailure",
    "PurgeReport",
    "ResponseCaptureBuffer",
    "SeedFailure",
    "ServerConfig",
    "ServerLifecycle",
    "ServerState",
    "StateSnapshot",
    "SuiteAborted",
    "SuiteReport",
    "SuiteSequencer",
    "Synchronizer",
    "SystemUnderTest",
    "TestNamespace",
    "WaitOutcome",
    "WaitTimeout",
    "configure_logging",
    "create_harness_app",
    "get_logger",
]
