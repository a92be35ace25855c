"""A small onboarding conversation service.

Inbound messages are accepted immediately and processed on a worker pool,
so every reply is asynchronous from the sender's point of view. The flow:

  first message          -> subject + session created, welcome sent
  reply while awaiting   -> name stored, subject onboarded, confirmation sent
  anything after that    -> acknowledgement

Replies are persisted to the store before they are emitted, so a state
query made after observing a reply always reflects it.
"""

from __future__ import annotations

import threading
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Mapping

from ..observability import get_logger
from ..protocols import EffectCallback, NamespacedStore, StateSnapshot

logger = get_logger(__name__)

WELCOME_TEXT = "Welcome aboard! What should we call you?"
CONFIRM_TEXT = "Thanks, {name}! Your onboarding is complete."
ACK_TEXT = "Got it: {text}"

AWAITING_NAME = "awaiting_name"
ACTIVE = "active"


class InvalidInbound(ValueError):
    """Inbound payload is missing ``subject_id`` or ``text``."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OnboardingService:
    """Reference system under test.

    Args:
        store: Store holding subjects, sessions and messages.
        workers: Worker pool size.
        processing_delay: Seconds each message waits before processing,
            to simulate a slow downstream.
    """

    def __init__(
        self,
        store: NamespacedStore,
        *,
        workers: int = 4,
        processing_delay: float = 0.0,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._store = store
        self._delay = processing_delay
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="onboarding",
        )
        self._callbacks: list[EffectCallback] = []
        self._callbacks_lock = threading.Lock()
        # Held only while some message for the subject is being processed.
        self._subject_locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    # ── SystemUnderTest ────────────────────────────────────────────

    def handle_inbound_request(self, raw_payload: Any) -> None:
        """Validate and enqueue one inbound message.

        Raises:
            InvalidInbound: If the payload lacks a subject id or text.
        """
        if not isinstance(raw_payload, Mapping):
            raise InvalidInbound("payload must be an object")
        subject_id = raw_payload.get("subject_id")
        text = raw_payload.get("text")
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidInbound("subject_id must be a non-empty string")
        if not isinstance(text, str):
            raise InvalidInbound("text must be a string")

        future = self._executor.submit(self._process, subject_id, text)
        future.add_done_callback(self._log_failure)

    def on_outbound_effect(self, callback: EffectCallback) -> None:
        with self._callbacks_lock:
            self._callbacks.append(callback)

    def query_state(self, subject_id: str) -> StateSnapshot | None:
        subjects = self._store.select("subjects", {"id": subject_id})
        if not subjects:
            return None
        subject = subjects[0]
        sessions = self._store.select("sessions", {"subject_id": subject_id}, limit=1)
        session = sessions[0] if sessions else {}
        messages = self._store.select(
            "messages", {"subject_id": subject_id}, order="seq",
        )
        return StateSnapshot(
            subject_id=subject_id,
            session={
                "state": session.get("state"),
                "name": subject.get("name"),
                "updated_at": session.get("updated_at"),
            },
            history=tuple(
                {
                    "seq": m["seq"],
                    "direction": m["direction"],
                    "kind": m["kind"],
                    "text": m["text"],
                }
                for m in messages
            ),
            flags={
                "onboarding_started": True,
                "onboarded": bool(subject.get("onboarded")),
            },
        )

    def close(self) -> None:
        """Finish queued messages and stop the worker pool."""
        self._executor.shutdown(wait=True)

    # ── Processing ─────────────────────────────────────────────────

    def _lock_for(self, subject_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._subject_locks.setdefault(subject_id, threading.Lock())

    def _process(self, subject_id: str, text: str) -> None:
        if self._delay:
            time.sleep(self._delay)

        # Messages from one subject are handled in arrival order relative to
        # each other; different subjects proceed in parallel.
        with self._lock_for(subject_id):
            now = _now_iso()
            subject_rows = self._store.select("subjects", {"id": subject_id})
            session_id = f"{subject_id}:session"

            if not subject_rows:
                self._store.insert("subjects", {
                    "id": subject_id, "name": None, "onboarded": False, "created_at": now,
                })
                self._store.insert("sessions", {
                    "id": session_id, "subject_id": subject_id,
                    "state": AWAITING_NAME, "updated_at": now,
                })
                self._append(subject_id, "inbound", "message", text)
                reply_kind, reply = "welcome", WELCOME_TEXT
            else:
                self._append(subject_id, "inbound", "message", text)
                sessions = self._store.select("sessions", {"id": session_id})
                state = sessions[0]["state"] if sessions else ACTIVE
                if state == AWAITING_NAME:
                    name = text.strip() or "friend"
                    self._store.update("subjects", {"id": subject_id}, {
                        "name": name, "onboarded": True,
                    })
                    self._store.update("sessions", {"id": session_id}, {
                        "state": ACTIVE, "updated_at": now,
                    })
                    reply_kind, reply = "confirmation", CONFIRM_TEXT.format(name=name)
                else:
                    reply_kind, reply = "ack", ACK_TEXT.format(text=text)

            self._append(subject_id, "outbound", reply_kind, reply)

        logger.debug("reply_ready", subject_id=subject_id, kind=reply_kind)
        self._emit({"subject_id": subject_id, "kind": reply_kind, "text": reply})

    def _append(self, subject_id: str, direction: str, kind: str, text: str) -> None:
        seq = self._store.count("messages", {"subject_id": subject_id}) + 1
        self._store.insert("messages", {
            "id": f"{subject_id}:{seq}",
            "subject_id": subject_id,
            "direction": direction,
            "kind": kind,
            "text": text,
            "seq": seq,
        })

    def _emit(self, effect: dict[str, Any]) -> None:
        with self._callbacks_lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(effect)

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "message_processing_failed",
                error=f"{type(exc).__name__}: {exc}",
                exc_info=exc,
            )
