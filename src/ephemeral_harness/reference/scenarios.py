"""Onboarding scenarios, runnable against any harness session.

Each scenario takes a ``HarnessSession`` inside an active test case and
raises ``AssertionError`` (``WaitTimeout`` included) when the system under
test misbehaves.
"""

from __future__ import annotations

import threading
from typing import Callable

from ..sequencer import HarnessSession
from .service import WELCOME_TEXT

Scenario = Callable[[HarnessSession], None]

WELCOME_PHRASE = "Welcome aboard"
WELCOME_TIMEOUT = 15.0


def first_contact_welcome(h: HarnessSession) -> None:
    """One inbound message yields one welcome; purge makes the subject vanish."""
    s1 = h.subject("S1")
    h.client.send(s1, "hello")

    h.sync.wait_for_effects(1, timeout=WELCOME_TIMEOUT).assert_satisfied(
        f"welcome for {s1}",
    )
    effects = h.capture.snapshot()
    assert len(effects) == 1, f"expected exactly one effect, got {len(effects)}"
    assert WELCOME_PHRASE in effects[0].get("text", ""), effects[0].payload
    assert effects[0].get("subject_id") == s1

    state = h.client.state(s1)
    assert state is not None, f"no state for {s1}"
    assert state["flags"]["onboarding_started"] is True
    assert state["flags"]["onboarded"] is False

    h.isolation.purge()
    assert h.client.state(s1) is None, f"{s1} survived purge"


def concurrent_subjects_attribution(h: HarnessSession) -> None:
    """Two subjects at once: effects and history stay with their owner."""
    s1, s2 = h.subject("S1"), h.subject("S2")
    start = threading.Barrier(2)

    def send(subject_id: str) -> None:
        start.wait()
        h.client.send(subject_id, f"hello from {subject_id}")

    senders = [threading.Thread(target=send, args=(sid,)) for sid in (s1, s2)]
    for thread in senders:
        thread.start()
    for thread in senders:
        thread.join()

    h.sync.wait_for(
        lambda: len(h.capture.for_subject(s1)) >= 1 and len(h.capture.for_subject(s2)) >= 1,
        timeout=WELCOME_TIMEOUT,
    ).assert_satisfied("one welcome per subject")

    for subject_id in (s1, s2):
        effects = h.capture.for_subject(subject_id)
        assert len(effects) == 1, f"{subject_id}: {len(effects)} effects"
        assert effects[0].get("text") == WELCOME_TEXT

        history = h.client.history(subject_id)
        assert history is not None, f"no history for {subject_id}"
        inbound = [m["text"] for m in history if m["direction"] == "inbound"]
        assert inbound == [f"hello from {subject_id}"], inbound


def name_completes_onboarding(h: HarnessSession) -> None:
    """Replying with a name flips the onboarded flag."""
    s1 = h.subject("S1")
    h.client.send(s1, "hi")
    h.sync.wait_for_effects(1).assert_satisfied("welcome")
    h.client.send(s1, "Ada")
    h.sync.wait_for_effects(2).assert_satisfied("confirmation")

    state = h.client.state(s1)
    assert state is not None
    assert state["flags"]["onboarded"] is True
    assert state["session"]["name"] == "Ada"


SCENARIOS: dict[str, Scenario] = {
    "first_contact_welcome": first_contact_welcome,
    "concurrent_subjects_attribution": concurrent_subjects_attribution,
    "name_completes_onboarding": name_completes_onboarding,
}
