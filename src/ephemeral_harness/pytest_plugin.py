"""pytest integration.

Enable it from the top-level ``conftest.py`` of a test tree::

    pytest_plugins = ["ephemeral_harness.pytest_plugin"]

and point it at a target factory, either on the command line
(``--harness-target pkg.module:factory``), in the ini file
(``harness_target = pkg.module:factory``), or by overriding the
session-scoped ``harness_target`` fixture. A factory takes
``HarnessSettings`` and returns a ``HarnessTarget``.

Fixtures:

- ``harness_settings`` (session): env settings with option overrides.
- ``harness_suite`` (session): the running suite's ``HarnessSession``.
- ``harness`` (function): the same session inside an isolated test case.

An infrastructure failure (bind, purge) ends the whole run through
``pytest.exit`` with status ``EXIT_ABORTED``.
"""

from __future__ import annotations

import dataclasses
import importlib
from typing import Callable, Iterator

import pytest

from .errors import SuiteAborted
from .observability import configure_logging
from .sequencer import CaseOutcome, HarnessSession, HarnessTarget, SuiteSequencer
from .settings import HarnessSettings

EXIT_ABORTED = 2

_CALL_REPORT_KEY = pytest.StashKey[pytest.TestReport]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup('ephemeral-harness')
    group.addoption(
        '--harness-port',
        type=int,
        default=None,
        help='Listener port for the harness (0 = any free port)',
    )
    group.addoption(
        '--harness-namespace',
        default=None,
        help='Namespace prefix for test-owned records',
    )
    group.addoption(
        '--harness-target',
        default=None,
        help='module:callable returning a HarnessTarget',
    )
    parser.addini('harness_target', 'module:callable returning a HarnessTarget', default='')


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo):
    outcome = yield
    report = outcome.get_result()
    if report.when == 'call':
        item.stash[_CALL_REPORT_KEY] = report


def _load_factory(spec: str) -> Callable[[HarnessSettings], HarnessTarget]:
    module_name, sep, attr = spec.partition(':')
    if not sep or not module_name or not attr:
        raise pytest.UsageError(f'harness target {spec!r} must look like module:callable')
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise pytest.UsageError(f'{module_name} has no attribute {attr!r}') from None


@pytest.fixture(scope='session')
def harness_settings(pytestconfig: pytest.Config) -> HarnessSettings:
    overrides = {
        'port': pytestconfig.getoption('harness_port'),
        'namespace_prefix': pytestconfig.getoption('harness_namespace'),
    }
    settings = dataclasses.replace(
        HarnessSettings.from_env(),
        **{k: v for k, v in overrides.items() if v is not None},
    )
    configure_logging(level=settings.log_level, json_output=settings.log_format == 'json')
    return settings


@pytest.fixture(scope='session')
def harness_target(
    pytestconfig: pytest.Config, harness_settings: HarnessSettings,
) -> Iterator[HarnessTarget]:
    spec = pytestconfig.getoption('harness_target') or pytestconfig.getini('harness_target')
    if not spec:
        raise pytest.UsageError(
            'no harness target: pass --harness-target, set harness_target in '
            'the ini file, or override the harness_target fixture'
        )
    target = _load_factory(spec)(harness_settings)
    try:
        yield target
    finally:
        target.close()


@pytest.fixture(scope='session')
def harness_suite(
    harness_target: HarnessTarget, harness_settings: HarnessSettings,
) -> Iterator[HarnessSession]:
    sequencer = SuiteSequencer(harness_target, settings=harness_settings)
    try:
        with sequencer.suite() as session:
            yield session
    except SuiteAborted as exc:
        pytest.exit(f'harness suite aborted: {exc}', returncode=EXIT_ABORTED)


@pytest.fixture
def harness(
    harness_suite: HarnessSession, request: pytest.FixtureRequest,
) -> Iterator[HarnessSession]:
    try:
        with harness_suite.test_case(request.node.nodeid) as session:
            yield session
            # pytest does not raise test failures into fixtures; record them.
            report = request.node.stash.get(_CALL_REPORT_KEY, None)
            if report is not None and report.failed:
                harness_suite.record_outcome(
                    CaseOutcome.FAIL, str(report.longrepr)[:2000],
                )
    except SuiteAborted as exc:
        pytest.exit(f'harness suite aborted: {exc}', returncode=EXIT_ABORTED)
