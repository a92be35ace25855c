"""Tests for the outbound effect capture buffer."""

from __future__ import annotations

import threading
import time

from ephemeral_harness.capture import ResponseCaptureBuffer


# =====================================================================
# 1. Ordering and sequence numbers
# =====================================================================


class TestRecord:

    def test_sequences_start_at_one(self):
        buf = ResponseCaptureBuffer()
        first = buf.record({'text': 'a'})
        second = buf.record({'text': 'b'})
        assert (first.sequence, second.sequence) == (1, 2)

    def test_snapshot_preserves_arrival_order(self):
        buf = ResponseCaptureBuffer()
        for i in range(5):
            buf.record({'n': i})
        assert [e.get('n') for e in buf.snapshot()] == [0, 1, 2, 3, 4]

    def test_snapshot_is_immutable_copy(self):
        buf = ResponseCaptureBuffer()
        buf.record('x')
        snap = buf.snapshot()
        buf.record('y')
        assert len(snap) == 1
        assert len(buf) == 2

    def test_get_on_non_mapping_payload_returns_default(self):
        effect = ResponseCaptureBuffer().record('plain text')
        assert effect.get('subject_id') is None
        assert effect.get('subject_id', 'dflt') == 'dflt'

    def test_to_dict(self):
        effect = ResponseCaptureBuffer().record({'k': 1})
        data = effect.to_dict()
        assert data['sequence'] == 1
        assert data['payload'] == {'k': 1}
        assert 'T' in data['timestamp']


# =====================================================================
# 2. Clear
# =====================================================================


class TestClear:

    def test_clear_empties_and_resets_sequence(self):
        buf = ResponseCaptureBuffer()
        buf.record('a')
        buf.record('b')
        buf.clear()
        assert buf.snapshot() == ()
        assert buf.record('c').sequence == 1

    def test_clear_on_empty_buffer_is_harmless(self):
        buf = ResponseCaptureBuffer()
        buf.clear()
        assert len(buf) == 0


# =====================================================================
# 3. Concurrency
# =====================================================================


class TestConcurrentRecord:

    def test_concurrent_writers_get_unique_contiguous_sequences(self):
        buf = ResponseCaptureBuffer()

        def writer(tag):
            for i in range(200):
                buf.record({'tag': tag, 'i': i})

        threads = [threading.Thread(target=writer, args=(t,)) for t in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        sequences = [e.sequence for e in buf.snapshot()]
        assert sequences == list(range(1, 1601))

    def test_snapshots_never_shrink_without_clear(self):
        buf = ResponseCaptureBuffer()
        stop = threading.Event()

        def writer():
            while not stop.is_set():
                buf.record('x')

        t = threading.Thread(target=writer)
        t.start()
        try:
            last = 0
            for _ in range(200):
                size = len(buf.snapshot())
                assert size >= last
                last = size
        finally:
            stop.set()
            t.join()

    def test_per_writer_order_is_preserved(self):
        buf = ResponseCaptureBuffer()

        def writer(tag):
            for i in range(50):
                buf.record({'subject_id': tag, 'i': i})

        threads = [threading.Thread(target=writer, args=(f's{n}',)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for n in range(4):
            seen = [e.get('i') for e in buf.for_subject(f's{n}')]
            assert seen == list(range(50))


# =====================================================================
# 4. Blocking wait
# =====================================================================


class TestWaitForCount:

    def test_returns_immediately_when_satisfied(self):
        buf = ResponseCaptureBuffer()
        buf.record('a')
        assert buf.wait_for_count(1, timeout=0.01) is True

    def test_wakes_on_record(self):
        buf = ResponseCaptureBuffer()
        timer = threading.Timer(0.05, buf.record, args=('late',))
        timer.start()
        start = time.monotonic()
        try:
            assert buf.wait_for_count(1, timeout=5) is True
        finally:
            timer.cancel()
        assert time.monotonic() - start < 2

    def test_times_out(self):
        buf = ResponseCaptureBuffer()
        start = time.monotonic()
        assert buf.wait_for_count(1, timeout=0.05) is False
        assert time.monotonic() - start >= 0.05
