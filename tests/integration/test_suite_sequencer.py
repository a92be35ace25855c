"""Integration tests for suite/test-case sequencing around a live listener."""

from __future__ import annotations

import socket
import threading

import pytest

from ephemeral_harness.errors import (
    ConcurrentTestError,
    NamespaceConfigError,
    PurgeFailure,
    SeedFailure,
    StoreError,
    SuiteAborted,
    WaitTimeout,
)
from ephemeral_harness.isolation import FixtureSet
from ephemeral_harness.sequencer import CaseOutcome, HarnessTarget, SuiteSequencer
from ephemeral_harness.server import ServerState
from ephemeral_harness.settings import HarnessSettings

SETTINGS = HarnessSettings(
    namespace_prefix='itest-seq-', port=0, wait_timeout=2, poll_interval=0.01,
)


@pytest.fixture
def target(echo_system, memory_store, small_schema):
    return HarnessTarget(system=echo_system, store=memory_store, schema=small_schema)


@pytest.fixture
def sequencer(target, namespaces):
    return SuiteSequencer(target, settings=SETTINGS, namespaces=namespaces)


class CallLog:
    """Records isolation and lifecycle calls in order."""

    def __init__(self, sequencer):
        self.calls = []
        for obj, names in (
            (sequencer.isolation, ('purge', 'seed')),
            (sequencer.lifecycle, ('start', 'stop')),
            (sequencer.capture, ('clear',)),
        ):
            for name in names:
                setattr(obj, name, self._wrap(name, getattr(obj, name)))

    def _wrap(self, name, fn):
        def wrapper(*args, **kwargs):
            self.calls.append(name)
            return fn(*args, **kwargs)
        return wrapper


# =====================================================================
# 1. Ordering
# =====================================================================


class TestOrdering:

    def test_suite_and_case_order(self, sequencer):
        log = CallLog(sequencer)
        with sequencer.suite() as session:
            assert log.calls == ['purge', 'seed', 'start']
            log.calls.clear()
            with session.test_case('one'):
                assert log.calls == ['clear', 'purge', 'seed']
            assert log.calls[-1] == 'purge'
            log.calls.clear()
        assert log.calls == ['purge', 'stop']

    def test_session_drives_system_over_http(self, sequencer, echo_system):
        with sequencer.suite() as session:
            with session.test_case('send') as h:
                sid = h.subject('a')
                h.client.send(sid, 'hi')
                h.sync.wait_for_effects(1).assert_satisfied()
                assert h.client.state(sid)['flags'] == {'known': True}
        assert echo_system.inbound[0]['subject_id'] == 'itest-seq-a'

    def test_fixtures_seeded_per_case(self, sequencer, memory_store, small_schema):
        fixtures = FixtureSet.qualified(sequencer.namespace, small_schema, {
            'accounts': [{'id': 'seeded', 'label': 'fixture'}],
        })
        with sequencer.suite() as session:
            for name in ('first', 'second'):
                with session.test_case(name, fixtures) as h:
                    assert h.store.count('accounts', {'id': 'itest-seq-seeded'}) == 1
                    h.store.insert('accounts', {'id': 'itest-seq-junk', 'label': 'x'})
        assert memory_store.count('accounts') == 0

    def test_capture_cleared_between_cases(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('first') as h:
                h.capture.record({'subject_id': 'itest-seq-a'})
            with session.test_case('second') as h:
                assert len(h.capture) == 0
                assert h.capture.record('x').sequence == 1


# =====================================================================
# 2. Teardown and results
# =====================================================================


class TestTeardown:

    def test_teardown_runs_on_exception(self, sequencer, memory_store):
        with pytest.raises(RuntimeError):
            with sequencer.suite() as session:
                memory_store.insert('accounts', {'id': 'itest-seq-left', 'label': 'x'})
                raise RuntimeError('boom')
        assert sequencer.lifecycle.state is ServerState.STOPPED
        assert memory_store.count('accounts') == 0

    def test_outside_rows_survive_suite(self, sequencer, memory_store):
        memory_store.insert('accounts', {'id': 'prod-1', 'label': 'real'})
        with sequencer.suite():
            pass
        assert memory_store.count('accounts', {'id': 'prod-1'}) == 1

    def test_results_record_outcomes(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('passes'):
                pass
            with pytest.raises(AssertionError):
                with session.test_case('fails'):
                    assert False, 'nope'
            with pytest.raises(WaitTimeout):
                with session.test_case('times_out') as h:
                    h.sync.wait_for(lambda: False, timeout=0.02).assert_satisfied('never')
            with pytest.raises(KeyError):
                with session.test_case('errors'):
                    raise KeyError('x')
        outcomes = {r.name: r.outcome for r in sequencer.results}
        assert outcomes == {
            'passes': CaseOutcome.PASS,
            'fails': CaseOutcome.FAIL,
            'times_out': CaseOutcome.FAIL,
            'errors': CaseOutcome.ERROR,
        }
        timed_out = [r for r in sequencer.results if r.name == 'times_out'][0]
        assert 'timed out' in timed_out.wait_diagnostic

    def test_record_outcome_overrides_pass(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('external') as h:
                h.record_outcome('fail', 'reported by runner')
        assert sequencer.results[0].outcome is CaseOutcome.FAIL
        assert sequencer.results[0].error_detail == 'reported by runner'

    def test_store_error_in_case_reaches_caller(self, sequencer):
        with sequencer.suite() as session:
            with pytest.raises(StoreError) as exc_info:
                with session.test_case('direct_query') as h:
                    h.store.select('no_such_table')
        assert exc_info.value.table == 'no_such_table'
        assert sequencer.results[0].outcome is CaseOutcome.ERROR
        assert 'StoreError' in sequencer.results[0].error_detail


# =====================================================================
# 3. Failure escalation
# =====================================================================


class TestEscalation:

    def test_seed_failure_fails_only_that_case(self, sequencer):
        bad = FixtureSet({'accounts': ({'id': 'prod-x', 'label': 'outside'},)})
        with sequencer.suite() as session:
            with pytest.raises(SeedFailure):
                with session.test_case('bad_fixture', bad):
                    pytest.fail('body must not run')
            with session.test_case('next'):
                pass
        assert [r.outcome for r in sequencer.results] == [CaseOutcome.ERROR, CaseOutcome.PASS]

    def test_purge_failure_aborts_suite(self, sequencer):
        with pytest.raises(SuiteAborted) as suite_exc:
            with sequencer.suite() as session:
                # Every purge from here on fails, teardown included.
                sequencer.isolation.purge = _raise_purge_failure
                with pytest.raises(SuiteAborted):
                    with session.test_case('doomed'):
                        pytest.fail('body must not run')
                with pytest.raises(SuiteAborted):
                    with session.test_case('after_abort'):
                        pass
        assert 'teardown purge failed' in str(suite_exc.value)
        assert sequencer.aborted
        assert sequencer.lifecycle.state is ServerState.STOPPED
        assert [(r.name, r.outcome) for r in sequencer.results] == [
            ('doomed', CaseOutcome.ABORTED),
        ]

    def test_unexpected_store_exception_during_purge_aborts_suite(
        self, sequencer, memory_store, monkeypatch,
    ):
        def refuse(table, filters):
            raise ConnectionResetError('store went away')

        with pytest.raises(SuiteAborted):
            with sequencer.suite() as session:
                monkeypatch.setattr(memory_store, 'delete', refuse)
                with pytest.raises(SuiteAborted):
                    with session.test_case('doomed'):
                        pass
        assert sequencer.aborted
        assert sequencer.lifecycle.state is ServerState.STOPPED

    def test_abort_carries_last_wait_diagnostic(self, sequencer):
        with sequencer.suite() as session:
            with pytest.raises(WaitTimeout):
                with session.test_case('waits') as h:
                    h.capture.record({'subject_id': 'itest-seq-a', 'text': 'evidence'})
                    h.sync.wait_for(lambda: False, timeout=0.01).assert_satisfied()
            sequencer.isolation.purge = _raise_purge_failure
            try:
                with pytest.raises(SuiteAborted) as exc_info:
                    with session.test_case('doomed'):
                        pass
            finally:
                del sequencer.isolation.purge
        assert 'evidence' in exc_info.value.diagnostic

    def test_bind_failure_aborts_before_tests(self, target, namespaces):
        blocker = socket.socket()
        blocker.bind(('127.0.0.1', 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        settings = HarnessSettings(namespace_prefix='itest-seq-', port=port)
        seq = SuiteSequencer(target, settings=settings, namespaces=namespaces)
        try:
            with pytest.raises(SuiteAborted) as exc_info:
                with seq.suite():
                    pytest.fail('suite body must not run')
        finally:
            blocker.close()
        assert 'server failed to start' in str(exc_info.value)
        assert namespaces.active == frozenset()


def _raise_purge_failure():
    raise PurgeFailure('store unavailable')


# =====================================================================
# 4. Exclusivity
# =====================================================================


class TestExclusivity:

    def test_nested_case_rejected(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('outer'):
                with pytest.raises(ConcurrentTestError):
                    with session.test_case('inner'):
                        pass

    def test_case_from_another_thread_rejected(self, sequencer):
        errors = []
        with sequencer.suite() as session:
            with session.test_case('main'):
                def other():
                    try:
                        with session.test_case('other'):
                            pass
                    except ConcurrentTestError as exc:
                        errors.append(exc)

                t = threading.Thread(target=other)
                t.start()
                t.join()
        assert len(errors) == 1
        assert [r.name for r in sequencer.results] == ['main']

    def test_overlapping_namespace_rejected(self, target, namespaces):
        first = SuiteSequencer(target, settings=SETTINGS, namespaces=namespaces)
        second = SuiteSequencer(
            target,
            settings=HarnessSettings(namespace_prefix='itest-seq-inner-', port=0),
            namespaces=namespaces,
        )
        with first.suite():
            with pytest.raises(NamespaceConfigError):
                with second.suite():
                    pass
        with second.suite():
            pass

    def test_invalid_settings_rejected(self, target):
        with pytest.raises(ValueError):
            SuiteSequencer(target, settings=HarnessSettings(port=-1))

    def test_case_outside_suite_rejected(self, sequencer):
        with pytest.raises(RuntimeError):
            with sequencer.test_case('loose'):
                pass
