"""Tests for the thread scheduler backend."""

import threading

from piiwatch.classification.backends import SchedulerBackend, ThreadSchedulerBackend


class TestThreadSchedulerBackend:
    def test_ticks_immediately_and_repeatedly(self):
        backend = ThreadSchedulerBackend()
        done = threading.Event()
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) >= 3:
                done.set()

        backend.start(tick, interval_seconds=0.01)
        try:
            assert done.wait(timeout=5.0)
            assert backend.is_running
        finally:
            backend.stop()
        assert not backend.is_running
        assert backend.tick_count >= 3

    def test_failing_tick_is_counted_and_loop_continues(self):
        backend = ThreadSchedulerBackend()
        done = threading.Event()
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("boom")

        backend.start(tick, interval_seconds=0.01)
        try:
            assert done.wait(timeout=5.0)
        finally:
            backend.stop()
        health = backend.health()
        assert health["failed_ticks"] >= 2
        assert health["backend"] == "thread"
        assert health["last_tick"] is not None

    def test_no_immediate_tick(self):
        backend = ThreadSchedulerBackend(tick_immediately=False)
        calls = []

        async def tick():
            calls.append(1)

        backend.start(tick, interval_seconds=60.0)
        backend.stop()
        assert calls == []

    def test_stop_without_start_and_double_start(self):
        backend = ThreadSchedulerBackend()
        backend.stop()

        async def tick():
            pass

        backend.start(tick, interval_seconds=60.0)
        backend.start(tick, interval_seconds=60.0)
        backend.stop()
        assert backend.get_health().healthy is False

    def test_satisfies_protocol(self):
        assert isinstance(ThreadSchedulerBackend(), SchedulerBackend)
