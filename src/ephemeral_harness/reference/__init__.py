"""Reference system under test: an onboarding conversation service.

``harness_target`` wires it to a store opened from the harness settings, and
is usable directly as ``--harness-target ephemeral_harness.reference:harness_target``.
"""

from __future__ import annotations

from ..sequencer import HarnessTarget
from ..settings import HarnessSettings
from ..store import open_store
from .schema import ONBOARDING_SCHEMA
from .service import (
    ACK_TEXT,
    CONFIRM_TEXT,
    WELCOME_TEXT,
    InvalidInbound,
    OnboardingService,
)


def harness_target(
    settings: HarnessSettings | None = None,
    *,
    workers: int = 4,
    processing_delay: float = 0.0,
) -> HarnessTarget:
    """Build an ``OnboardingService`` on a fresh store from ``settings``."""
    settings = settings or HarnessSettings()
    store = open_store(settings.store_url, ONBOARDING_SCHEMA)
    service = OnboardingService(
        store, workers=workers, processing_delay=processing_delay,
    )
    return HarnessTarget(system=service, store=store, schema=ONBOARDING_SCHEMA)


__all__ = [
    'ACK_TEXT',
    'CONFIRM_TEXT',
    'ONBOARDING_SCHEMA',
    'WELCOME_TEXT',
    'InvalidInbound',
    'OnboardingService',
    'harness_target',
]
