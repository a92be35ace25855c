"""Point the harness plugin fixtures at the reference onboarding system."""

from __future__ import annotations

import pytest

from ephemeral_harness.reference import harness_target as reference_target
from ephemeral_harness.settings import HarnessSettings


@pytest.fixture(scope='session')
def harness_settings():
    return HarnessSettings(
        namespace_prefix='itest-plugin-', port=0, wait_timeout=10, poll_interval=0.02,
    )


@pytest.fixture(scope='session')
def harness_target(harness_settings):
    target = reference_target(harness_settings, workers=2)
    yield target
    target.close()
