"""Unit tests for vigil.core.monitor.window — EventWindowTracker."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from vigil.core.clock import ManualClock
from vigil.core.monitor.window import EventWindowTracker, key_category


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def tracker(clock: ManualClock) -> EventWindowTracker:
    return EventWindowTracker(clock, retention={"failed_login": timedelta(minutes=5)})


class TestCounting:
    def test_counts_within_window(self, tracker: EventWindowTracker) -> None:
        for _ in range(3):
            tracker.record("failed_login:alice")
        assert tracker.count_since("failed_login:alice", timedelta(minutes=5)) == 3

    def test_unknown_key_counts_zero(self, tracker: EventWindowTracker) -> None:
        assert tracker.count_since("failed_login:nobody", timedelta(minutes=5)) == 0
        assert tracker.recent("failed_login:nobody") == []

    def test_old_events_leave_the_window(
        self, tracker: EventWindowTracker, clock: ManualClock
    ) -> None:
        tracker.record("failed_login:alice")
        clock.advance(minutes=3)
        tracker.record("failed_login:alice")
        clock.advance(minutes=3)
        assert tracker.count_since("failed_login:alice", timedelta(minutes=5)) == 1

    def test_future_events_are_not_counted(
        self, tracker: EventWindowTracker, clock: ManualClock
    ) -> None:
        tracker.record("failed_login:alice", clock.now() + timedelta(minutes=1))
        assert tracker.count_since("failed_login:alice", timedelta(minutes=5)) == 0

    def test_out_of_order_records_stay_sorted(
        self, tracker: EventWindowTracker, clock: ManualClock
    ) -> None:
        now = clock.now()
        tracker.record("failed_login:alice", now - timedelta(minutes=1))
        tracker.record("failed_login:alice", now - timedelta(minutes=2))
        recent = tracker.recent("failed_login:alice")
        assert recent == sorted(recent)
        assert len(recent) == 2

    def test_keys_are_independent(self, tracker: EventWindowTracker) -> None:
        tracker.record("failed_login:alice")
        tracker.record("failed_login:bob")
        assert tracker.count_since("failed_login:alice", timedelta(minutes=5)) == 1
        assert sorted(tracker.keys()) == ["failed_login:alice", "failed_login:bob"]


class TestBounds:
    def test_per_key_cap(self, clock: ManualClock) -> None:
        tracker = EventWindowTracker(clock, max_events_per_key=3)
        counts = [tracker.record("export:u1") for _ in range(5)]
        assert counts[-1] == 3
        assert tracker.count_since("export:u1", timedelta(hours=1)) == 3

    def test_retention_prunes_on_read(
        self, tracker: EventWindowTracker, clock: ManualClock
    ) -> None:
        tracker.record("failed_login:alice")
        clock.advance(minutes=6)
        assert tracker.recent("failed_login:alice") == []

    def test_default_retention_covers_longest_window(self, clock: ManualClock) -> None:
        tracker = EventWindowTracker(clock, retention={"export": timedelta(hours=3)})
        assert tracker.retention_for("other:key") == timedelta(hours=3)
        assert tracker.retention_for("export:u1") == timedelta(hours=3)

    def test_sweep_drops_stale_keys(self, tracker: EventWindowTracker, clock: ManualClock) -> None:
        tracker.record("failed_login:alice")
        tracker.record("admin_action:root")
        clock.advance(minutes=10)
        # failed_login retains 5 minutes; admin_action falls back to one hour
        assert tracker.sweep() == 1
        assert tracker.keys() == ["admin_action:root"]

    def test_reset(self, tracker: EventWindowTracker) -> None:
        tracker.record("failed_login:alice")
        tracker.reset("failed_login:alice")
        assert len(tracker) == 0
        assert tracker.record("failed_login:alice") == 1


class TestConcurrency:
    def test_parallel_records_are_not_lost(self, clock: ManualClock) -> None:
        tracker = EventWindowTracker(clock, max_events_per_key=10_000)

        def worker() -> None:
            for _ in range(250):
                tracker.record("restricted_access:u1")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert tracker.count_since("restricted_access:u1", timedelta(hours=1)) == 2000

    def test_records_racing_sweep_survive(self, clock: ManualClock) -> None:
        tracker = EventWindowTracker(clock, max_events_per_key=10_000)
        stop = threading.Event()

        def sweeper() -> None:
            while not stop.is_set():
                tracker.sweep()

        t = threading.Thread(target=sweeper)
        t.start()
        try:
            for _ in range(500):
                tracker.record("export:u1")
        finally:
            stop.set()
            t.join()
        assert tracker.count_since("export:u1", timedelta(hours=1)) == 500


def test_key_category() -> None:
    assert key_category("failed_login:10.0.0.1") == "failed_login"
    assert key_category("a:b:c") == "a"
