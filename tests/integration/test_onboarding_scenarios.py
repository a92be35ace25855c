"""End-to-end onboarding scenarios driven through SuiteSequencer."""

from __future__ import annotations

import pytest

from ephemeral_harness.reference import harness_target
from ephemeral_harness.reference.scenarios import (
    SCENARIOS,
    concurrent_subjects_attribution,
    first_contact_welcome,
)
from ephemeral_harness.sequencer import CaseOutcome, SuiteSequencer
from ephemeral_harness.settings import HarnessSettings


@pytest.fixture(params=['memory', 'sqlite'])
def settings(request, tmp_path):
    store_url = 'memory://'
    if request.param == 'sqlite':
        store_url = f'sqlite:///{tmp_path / "onboarding.db"}'
    return HarnessSettings(
        namespace_prefix='itest-onb-', port=0, store_url=store_url,
        wait_timeout=10, poll_interval=0.02,
    )


@pytest.fixture
def target(settings):
    t = harness_target(settings, workers=2)
    yield t
    t.close()


@pytest.fixture
def sequencer(target, settings, namespaces):
    return SuiteSequencer(target, settings=settings, namespaces=namespaces)


# =====================================================================
# 1. Scenarios
# =====================================================================


class TestScenarios:

    def test_first_contact_welcome(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('S1') as h:
                first_contact_welcome(h)
        assert sequencer.results[0].outcome is CaseOutcome.PASS

    def test_concurrent_subjects_attribution(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('S2') as h:
                concurrent_subjects_attribution(h)
        assert sequencer.results[0].outcome is CaseOutcome.PASS

    def test_all_scenarios_in_one_suite(self, sequencer):
        with sequencer.suite() as session:
            for name, scenario in SCENARIOS.items():
                with session.test_case(name) as h:
                    scenario(h)
        assert [r.name for r in sequencer.results] == list(SCENARIOS)
        assert all(r.passed for r in sequencer.results)

    def test_cases_do_not_see_each_other(self, sequencer):
        with sequencer.suite() as session:
            with session.test_case('first') as h:
                h.client.send(h.subject('S1'), 'hello')
                h.sync.wait_for_effects(1).assert_satisfied()
            with session.test_case('second') as h:
                assert h.client.state(h.subject('S1')) is None
                h.client.send(h.subject('S1'), 'hello again')
                h.sync.wait_for_effects(1).assert_satisfied()
                history = h.client.history(h.subject('S1'))
                assert [m['text'] for m in history if m['direction'] == 'inbound'] == [
                    'hello again',
                ]


# =====================================================================
# 2. Isolation against the real store
# =====================================================================


class TestStoreIsolation:

    def test_non_test_subjects_survive(self, sequencer, target):
        target.store.insert('subjects', {
            'id': 'customer-1', 'name': 'Real', 'onboarded': True,
            'created_at': '2026-01-01T00:00:00+00:00',
        })
        with sequencer.suite() as session:
            with session.test_case('S1') as h:
                first_contact_welcome(h)
        assert target.store.count('subjects', {'id': 'customer-1'}) == 1
        assert target.store.count('subjects') == 1

    def test_failing_scenario_is_reported(self, sequencer):
        with sequencer.suite() as session:
            with pytest.raises(AssertionError):
                with session.test_case('no_send') as h:
                    h.sync.wait_for_effects(1, timeout=0.05).assert_satisfied('welcome')
        result = sequencer.results[0]
        assert result.outcome is CaseOutcome.FAIL
        assert 'timed out' in result.wait_diagnostic
