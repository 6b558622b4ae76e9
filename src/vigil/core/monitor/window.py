"""
EventWindowTracker — per-key sliding time-window counters.

Keys are ``"{category}:{subject}"`` strings, e.g. ``failed_login:alice``.
Each key holds a time-ordered list of event timestamps, bounded by its
category's retention window and a per-key cap. Old timestamps are pruned
lazily on read and by a periodic :meth:`sweep`.

Locking: a short global lock guards the key → bucket map; each bucket has
its own lock, so updates for different keys never contend. A swept bucket
is marked dead before it is dropped; a writer that raced the sweep sees
the mark and retries on a fresh bucket, so no update is lost.
"""

from __future__ import annotations

import bisect
import threading
from collections.abc import Mapping
from datetime import datetime, timedelta

from vigil.core.clock import Clock, SystemClock, utc
from vigil.core.constants import TRACKER_MAX_EVENTS_PER_KEY

_DEFAULT_RETENTION = timedelta(hours=1)


class _Bucket:
    __slots__ = ("lock", "times", "dead")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.times: list[datetime] = []
        self.dead = False


def key_category(key: str) -> str:
    return key.split(":", 1)[0]


class EventWindowTracker:
    """
    Usage::

        tracker = EventWindowTracker(clock, retention={"failed_login": timedelta(minutes=5)})
        tracker.record("failed_login:alice")
        tracker.count_since("failed_login:alice", timedelta(minutes=5))
    """

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        retention: Mapping[str, timedelta] | None = None,
        default_retention: timedelta | None = None,
        max_events_per_key: int = TRACKER_MAX_EVENTS_PER_KEY,
    ) -> None:
        self._clock = clock or SystemClock()
        self._retention = dict(retention or {})
        self._default_retention = default_retention or max(
            [_DEFAULT_RETENTION, *self._retention.values()]
        )
        self._cap = max(1, max_events_per_key)
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def retention_for(self, key: str) -> timedelta:
        return self._retention.get(key_category(key), self._default_retention)

    def _bucket(self, key: str) -> _Bucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket()
            return bucket

    @staticmethod
    def _prune(bucket: _Bucket, cutoff: datetime) -> None:
        idx = bisect.bisect_left(bucket.times, cutoff)
        if idx:
            del bucket.times[:idx]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def record(self, key: str, at: datetime | None = None) -> int:
        """Add one event for *key* at *at* (default now); returns the retained count."""
        when = utc(at) if at is not None else self._clock.now()
        while True:
            bucket = self._bucket(key)
            with bucket.lock:
                if bucket.dead:
                    continue
                bisect.insort(bucket.times, when)
                if len(bucket.times) > self._cap:
                    del bucket.times[: len(bucket.times) - self._cap]
                return len(bucket.times)

    def count_since(self, key: str, window: timedelta) -> int:
        """Number of events for *key* stamped within ``[now - window, now]``."""
        now = self._clock.now()
        with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        with bucket.lock:
            self._prune(bucket, now - self.retention_for(key))
            lo = bisect.bisect_left(bucket.times, now - window)
            hi = bisect.bisect_right(bucket.times, now)
            return hi - lo

    def recent(self, key: str, limit: int = 10) -> list[datetime]:
        """The newest *limit* retained timestamps for *key*, oldest first."""
        now = self._clock.now()
        with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return []
        with bucket.lock:
            self._prune(bucket, now - self.retention_for(key))
            return list(bucket.times[-limit:]) if limit > 0 else []

    def reset(self, key: str) -> None:
        with self._lock:
            bucket = self._buckets.pop(key, None)
        if bucket is not None:
            with bucket.lock:
                bucket.dead = True
                bucket.times.clear()

    def sweep(self) -> int:
        """Prune every key and drop keys left empty; returns the number dropped."""
        now = self._clock.now()
        dropped = 0
        with self._lock:
            for key, bucket in list(self._buckets.items()):
                with bucket.lock:
                    self._prune(bucket, now - self.retention_for(key))
                    if not bucket.times:
                        bucket.dead = True
                        del self._buckets[key]
                        dropped += 1
        return dropped

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._buckets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
