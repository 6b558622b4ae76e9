"""Unit tests for vigil.core.audit.ledger — IntegrityChain append, verify and fallback."""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path

import pytest

from vigil.core.audit.chain import ViolationKind, genesis_hash
from vigil.core.audit.fallback import FallbackSink
from vigil.core.audit.ledger import IntegrityChain
from vigil.core.audit.models import (
    AccessResult,
    Actor,
    AuditEntry,
    EventType,
    Resource,
)
from vigil.core.clock import ManualClock
from vigil.core.exceptions import IntegrityViolationError, StorageError, TransientStorageFailure
from vigil.core.store.database import Database


class FlakyDatabase(Database):
    """Database whose audit inserts fail while ``failures_left`` is positive (-1 = always)."""

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.failures_left = 0
        self.attempts = 0

    def insert_audit_entry(self, entry: AuditEntry) -> int:
        self.attempts += 1
        if self.failures_left != 0:
            if self.failures_left > 0:
                self.failures_left -= 1
            raise TransientStorageFailure("database is locked")
        return super().insert_audit_entry(entry)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path) -> FlakyDatabase:
    d = FlakyDatabase(tmp_path / "ledger_test.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def fallback(tmp_path: Path) -> FallbackSink:
    return FallbackSink(tmp_path / "spool" / "audit_fallback.jsonl")


@pytest.fixture
def chain(db: FlakyDatabase, fallback: FallbackSink, clock: ManualClock) -> IntegrityChain:
    c = IntegrityChain(
        db,
        fallback=fallback,
        clock=clock,
        synchronous_actions=["PASSWORD_CHANGED", "ROLE_CHANGED"],
    )
    c.initialize()
    return c


def _view(chain: IntegrityChain, n: int = 1, *, actor: str = "officer-1") -> list[AuditEntry]:
    out = []
    for i in range(n):
        entry = chain.record(
            EventType.RECORD_ACCESS,
            "view",
            actor=Actor(actor),
            resource=Resource("record", str(i)),
        )
        assert entry is not None
        out.append(entry)
    return out


def _tamper(db: Database, sql: str, *params: object) -> None:
    conn = sqlite3.connect(str(db.path))
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------


class TestAppend:
    def test_first_entry_links_to_genesis(self, chain: IntegrityChain) -> None:
        (entry,) = _view(chain)
        assert entry.id is not None
        assert entry.previous_hash == genesis_hash()
        assert chain.head == entry.integrity_hash

    def test_entries_link_in_order(self, chain: IntegrityChain) -> None:
        first, second = _view(chain, 2)
        assert second.previous_hash == first.integrity_hash
        assert second.id == first.id + 1

    def test_entries_use_chain_clock(self, chain: IntegrityChain, clock: ManualClock) -> None:
        clock.advance(minutes=5)
        (entry,) = _view(chain)
        assert entry.timestamp == clock.now()

    def test_head_reloaded_from_store(
        self, chain: IntegrityChain, db: FlakyDatabase, clock: ManualClock
    ) -> None:
        last = _view(chain, 3)[-1]
        reopened = IntegrityChain(db, clock=clock)
        assert reopened.initialize() == last.integrity_hash
        (next_entry,) = _view(reopened)
        assert next_entry.previous_hash == last.integrity_hash
        assert reopened.verify_range().ok

    def test_subscribers_see_stored_entries(self, chain: IntegrityChain) -> None:
        seen: list[AuditEntry] = []
        chain.subscribe(seen.append)
        (entry,) = _view(chain)
        assert seen == [entry]

    def test_failing_subscriber_does_not_break_append(self, chain: IntegrityChain) -> None:
        def boom(entry: AuditEntry) -> None:
            raise RuntimeError("subscriber exploded")

        chain.subscribe(boom)
        (entry,) = _view(chain)
        assert entry.id is not None
        assert chain.appended == 1

    def test_concurrent_appends_produce_gap_free_chain(self, chain: IntegrityChain) -> None:
        def worker(n: int) -> None:
            _view(chain, 25, actor=f"officer-{n}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(worker, range(8)))

        report = chain.verify_range()
        assert report.ok
        assert report.checked == 200
        assert report.last_id - report.first_id + 1 == 200


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerifyRange:
    def test_empty_chain_is_ok(self, chain: IntegrityChain) -> None:
        report = chain.verify_range()
        assert report.ok
        assert report.checked == 0

    def test_clean_chain(self, chain: IntegrityChain) -> None:
        _view(chain, 10)
        report = chain.verify_range()
        assert report.ok
        assert report.checked == 10
        assert report.violations == ()

    def test_single_tampered_entry_reported_once(
        self, chain: IntegrityChain, db: FlakyDatabase
    ) -> None:
        entries = _view(chain, 5)
        _tamper(db, "UPDATE audit_log SET action = 'delete' WHERE id = ?", entries[2].id)
        report = chain.verify_range(exhaustive=True)
        assert not report.ok
        assert len(report.violations) == 1
        assert report.violations[0].entry_id == entries[2].id
        assert report.violations[0].kind is ViolationKind.CONTENT_MISMATCH

    def test_deleted_entry_detected(self, chain: IntegrityChain, db: FlakyDatabase) -> None:
        entries = _view(chain, 4)
        _tamper(db, "DELETE FROM audit_log WHERE id = ?", entries[1].id)
        report = chain.verify_range()
        assert not report.ok
        assert report.violations[0].entry_id == entries[2].id
        assert report.violations[0].kind is ViolationKind.CHAIN_DISCONTINUITY

    def test_raise_for_violations(self, chain: IntegrityChain, db: FlakyDatabase) -> None:
        entries = _view(chain, 3)
        chain.verify_range().raise_for_violations()
        _tamper(db, "UPDATE audit_log SET action = 'delete' WHERE id = ?", entries[1].id)
        with pytest.raises(IntegrityViolationError, match="first at entry") as exc_info:
            chain.verify_range().raise_for_violations()
        assert exc_info.value.violations[0].entry_id == entries[1].id

    def test_partial_range_anchors_on_preceding_entry(
        self, chain: IntegrityChain, clock: ManualClock
    ) -> None:
        entries = []
        for _ in range(5):
            entries.extend(_view(chain))
            clock.advance(minutes=1)
        report = chain.verify_range(start=entries[2].timestamp, end=entries[3].timestamp)
        assert report.ok
        assert report.checked == 2
        assert (report.first_id, report.last_id) == (entries[2].id, entries[3].id)

    def test_range_outside_entries(self, chain: IntegrityChain, clock: ManualClock) -> None:
        _view(chain, 2)
        later = clock.advance(hours=1)
        report = chain.verify_range(start=later)
        assert report.ok
        assert report.checked == 0

    def test_closed_store_raises(self, chain: IntegrityChain, db: FlakyDatabase) -> None:
        db.close()
        with pytest.raises(StorageError):
            chain.verify_range()


# ---------------------------------------------------------------------------
# Storage failures and fallback
# ---------------------------------------------------------------------------


class TestFallback:
    def test_transient_failure_is_retried(self, chain: IntegrityChain, db: FlakyDatabase) -> None:
        db.failures_left = 1
        (entry,) = _view(chain)
        assert entry.id is not None
        assert db.attempts == 2

    def test_failed_write_is_spooled(
        self, chain: IntegrityChain, db: FlakyDatabase, fallback: FallbackSink
    ) -> None:
        head = chain.head
        db.failures_left = -1
        assert chain.record(EventType.RECORD_ACCESS, "view", actor=Actor("u1")) is None
        assert chain.spooled == 1
        assert len(fallback) == 1
        assert chain.head == head

    def test_compliance_critical_action_fails_closed(
        self, chain: IntegrityChain, db: FlakyDatabase, fallback: FallbackSink
    ) -> None:
        db.failures_left = -1
        with pytest.raises(TransientStorageFailure):
            chain.record(EventType.ROLE_CHANGED, "grant_role", actor=Actor("admin"))
        assert len(fallback) == 1

    def test_require_durable_overrides_configuration(
        self, chain: IntegrityChain, db: FlakyDatabase
    ) -> None:
        db.failures_left = -1
        with pytest.raises(TransientStorageFailure):
            chain.record(EventType.RECORD_ACCESS, "view", require_durable=True)

    def test_replay_joins_chain_without_gap(
        self, chain: IntegrityChain, db: FlakyDatabase, fallback: FallbackSink
    ) -> None:
        _view(chain, 2)
        db.failures_left = -1
        chain.record(EventType.LOGIN_FAILED, "login", result=AccessResult.FAILED)
        chain.record(EventType.LOGOUT, "logout")
        db.failures_left = 0

        assert chain.replay_fallback() == 2
        assert len(fallback) == 0
        report = chain.verify_range()
        assert report.ok
        assert report.checked == 4

    def test_replay_stops_at_first_failure(
        self, chain: IntegrityChain, db: FlakyDatabase, fallback: FallbackSink
    ) -> None:
        db.failures_left = -1
        chain.record(EventType.LOGOUT, "logout")
        chain.record(EventType.LOGOUT, "logout")
        assert chain.replay_fallback() == 0
        assert len(fallback) == 2

    def test_replay_without_fallback_is_noop(self, db: FlakyDatabase) -> None:
        assert IntegrityChain(db).replay_fallback() == 0


class TestFallbackSink:
    def test_malformed_lines_are_skipped_and_kept(self, fallback: FallbackSink) -> None:
        entry = AuditEntry.create(
            EventType.LOGOUT, "logout", timestamp=datetime(2025, 1, 1, tzinfo=UTC)
        )
        fallback.write(entry, error="disk full")
        with fallback.path.open("a", encoding="utf-8") as fh:
            fh.write("{not json\n")
        fallback.write(entry)

        assert len(fallback.pending()) == 2
        fallback.discard(2)
        assert fallback.pending() == []
        assert "{not json" in fallback.path.read_text(encoding="utf-8")

    def test_missing_spool_is_empty(self, tmp_path: Path) -> None:
        assert FallbackSink(tmp_path / "none.jsonl").pending() == []
