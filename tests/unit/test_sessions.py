"""Unit tests for vigil.core.session.registry — SessionRegistry lifecycle."""

from __future__ import annotations

import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from vigil.core.audit.ledger import IntegrityChain
from vigil.core.audit.models import ClientContext, EventType
from vigil.core.clock import ManualClock
from vigil.core.config import SessionConfig
from vigil.core.exceptions import SessionEvicted, SessionExpired, SessionNotFound
from vigil.core.session.models import EndReason, SessionState
from vigil.core.session.registry import SessionRegistry
from vigil.core.store.database import Database


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "sessions_test.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def chain(db: Database, clock: ManualClock) -> IntegrityChain:
    c = IntegrityChain(db, clock=clock)
    c.initialize()
    return c


@pytest.fixture
def registry(db: Database, chain: IntegrityChain, clock: ManualClock) -> SessionRegistry:
    return SessionRegistry(db, chain=chain, clock=clock)


def _audited(db: Database, event_type: EventType) -> int:
    return db.count_audit_entries(event_types=[event_type])


class TestCreate:
    def test_issues_token_and_stores_reference_only(
        self, registry: SessionRegistry, db: Database
    ) -> None:
        issued = registry.create("alice", ClientContext(ip_address="10.1.1.1"))
        stored = db.get_session(issued.session.id)
        assert stored is not None
        assert stored.state is SessionState.ACTIVE
        assert stored.ip_address == "10.1.1.1"
        assert stored.token_ref == hashlib.sha256(issued.token.encode()).hexdigest()
        assert issued.token not in stored.token_ref

    def test_creation_is_audited(self, registry: SessionRegistry, db: Database) -> None:
        registry.create("alice")
        assert _audited(db, EventType.SESSION_CREATED) == 1

    def test_expiry_times(self, registry: SessionRegistry, clock: ManualClock) -> None:
        session = registry.create("alice").session
        assert session.expires_at == clock.now() + timedelta(minutes=30)
        assert session.absolute_expires_at == clock.now() + timedelta(hours=24)

    def test_fourth_session_evicts_least_recently_active(
        self, registry: SessionRegistry, db: Database, clock: ManualClock
    ) -> None:
        sessions = []
        for _ in range(3):
            sessions.append(registry.create("alice").session)
            clock.advance(seconds=1)
        registry.touch(sessions[0].id)
        clock.advance(seconds=1)

        registry.create("alice")

        active = {s.id for s in registry.list_active("alice")}
        assert len(active) == 3
        assert sessions[1].id not in active
        assert db.get_session(sessions[1].id).state is SessionState.EVICTED
        assert _audited(db, EventType.SESSION_EVICTED) == 1
        with pytest.raises(SessionEvicted):
            registry.touch(sessions[1].id)

    def test_limit_is_per_principal(self, registry: SessionRegistry) -> None:
        for _ in range(3):
            registry.create("alice")
        registry.create("bob")
        assert len(registry.list_active("alice")) == 3
        assert len(registry.list_active()) == 4

    def test_concurrent_creates_respect_limit(
        self, registry: SessionRegistry, db: Database
    ) -> None:
        workers = 8
        barrier = threading.Barrier(workers)

        def login(_: int) -> None:
            barrier.wait()
            registry.create("bob")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(login, range(workers)))

        assert len(registry.list_active("bob")) == SessionConfig().max_concurrent
        assert _audited(db, EventType.SESSION_EVICTED) == workers - SessionConfig().max_concurrent

    def test_undecodable_user_agent_is_stored(
        self, registry: SessionRegistry, db: Database
    ) -> None:
        issued = registry.create("alice", ClientContext(user_agent="bad\udcff"))
        assert db.get_session(issued.session.id).user_agent == "bad\\udcff"
        registry.touch(issued.session.id, ClientContext(user_agent="worse\udc80"))
        assert db.get_session(issued.session.id).user_agent == "worse\\udc80"

    def test_idle_principal_locks_are_dropped(self, registry: SessionRegistry) -> None:
        issued = registry.create("alice")
        registry.create("bob")
        registry.touch(issued.session.id)
        registry.invalidate_principal("alice")
        assert registry._locks == {}

    def test_stale_sessions_expire_before_eviction(
        self, registry: SessionRegistry, db: Database, clock: ManualClock
    ) -> None:
        old = registry.create("alice").session
        clock.advance(minutes=31)
        registry.create("alice")
        assert db.get_session(old.id).state is SessionState.IDLE_EXPIRED
        assert _audited(db, EventType.SESSION_EVICTED) == 0


class TestTouch:
    def test_extends_idle_expiry(self, registry: SessionRegistry, clock: ManualClock) -> None:
        session = registry.create("alice").session
        clock.advance(minutes=10)
        result = registry.touch(session.id)
        assert result.session.expires_at == clock.now() + timedelta(minutes=30)
        assert result.remaining == timedelta(minutes=30)
        assert not result.warning

    def test_touch_by_token(self, registry: SessionRegistry) -> None:
        issued = registry.create("alice")
        assert registry.touch_token(issued.token).session.id == issued.session.id

    def test_idle_timeout(
        self, registry: SessionRegistry, db: Database, clock: ManualClock
    ) -> None:
        session = registry.create("alice").session
        clock.advance(minutes=31)
        with pytest.raises(SessionExpired) as exc_info:
            registry.touch(session.id)
        assert exc_info.value.reauthenticate
        assert exc_info.value.session_id == session.id
        assert db.get_session(session.id).state is SessionState.IDLE_EXPIRED
        assert _audited(db, EventType.SESSION_TIMEOUT) == 1

    def test_absolute_timeout_caps_activity(
        self, db: Database, chain: IntegrityChain, clock: ManualClock
    ) -> None:
        registry = SessionRegistry(
            db, chain=chain, clock=clock, config=SessionConfig(absolute_timeout_hours=1)
        )
        session = registry.create("alice").session
        for _ in range(2):
            clock.advance(minutes=20)
            registry.touch(session.id)
        clock.advance(minutes=20)
        with pytest.raises(SessionExpired):
            registry.touch(session.id)
        assert db.get_session(session.id).state is SessionState.ABSOLUTE_EXPIRED

    def test_warning_near_absolute_expiry(
        self, db: Database, chain: IntegrityChain, clock: ManualClock
    ) -> None:
        registry = SessionRegistry(
            db, chain=chain, clock=clock, config=SessionConfig(absolute_timeout_hours=1)
        )
        session = registry.create("alice").session
        clock.advance(minutes=28)
        registry.touch(session.id)
        clock.advance(minutes=28)
        result = registry.touch(session.id)
        assert result.warning
        assert result.remaining == timedelta(minutes=4)

    def test_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFound):
            registry.touch("nope")
        with pytest.raises(SessionNotFound):
            registry.touch_token("not-a-token")

    def test_touch_is_not_audited(self, registry: SessionRegistry, db: Database) -> None:
        session = registry.create("alice").session
        before = db.count_audit_entries()
        registry.touch(session.id)
        assert db.count_audit_entries() == before


class TestInvalidate:
    def test_logout(self, registry: SessionRegistry, db: Database) -> None:
        session = registry.create("alice").session
        assert registry.invalidate(session.id)
        stored = db.get_session(session.id)
        assert stored.state is SessionState.LOGGED_OUT
        assert stored.end_reason == str(EndReason.LOGOUT)
        assert _audited(db, EventType.SESSION_TERMINATED) == 1
        with pytest.raises(SessionNotFound):
            registry.touch(session.id)

    def test_no_resurrection(self, registry: SessionRegistry) -> None:
        session = registry.create("alice").session
        assert registry.invalidate(session.id)
        assert not registry.invalidate(session.id)
        assert not registry.invalidate("missing")

    def test_invalidate_principal(self, registry: SessionRegistry) -> None:
        for _ in range(2):
            registry.create("alice")
        registry.create("bob")
        assert registry.invalidate_principal("alice", EndReason.PASSWORD_CHANGED) == 2
        assert registry.list_active("alice") == []
        assert len(registry.list_active("bob")) == 1


class TestSweep:
    def test_sweep_ends_expired_sessions(
        self, registry: SessionRegistry, db: Database, clock: ManualClock
    ) -> None:
        registry.create("alice")
        registry.create("bob")
        clock.advance(minutes=10)
        fresh = registry.create("carol").session
        clock.advance(minutes=25)

        assert registry.sweep_expired() == 2
        assert [s.id for s in registry.list_active()] == [fresh.id]
        assert _audited(db, EventType.SESSION_TIMEOUT) == 2

    def test_nothing_to_sweep(self, registry: SessionRegistry) -> None:
        registry.create("alice")
        assert registry.sweep_expired() == 0

    def test_large_sweep_writes_one_summary(
        self, db: Database, chain: IntegrityChain, clock: ManualClock
    ) -> None:
        registry = SessionRegistry(
            db, chain=chain, clock=clock, config=SessionConfig(sweep_batch_size=2)
        )
        for name in ("alice", "bob", "carol"):
            registry.create(name)
        clock.advance(hours=1)

        assert registry.sweep_expired() == 3
        assert _audited(db, EventType.SESSION_TIMEOUT) == 0
        assert _audited(db, EventType.SESSION_SWEEP_SUMMARY) == 1
        (summary,) = [
            e
            for e in db.get_recent_audit_entries()
            if e.event_type is EventType.SESSION_SWEEP_SUMMARY
        ]
        assert summary.metadata["count"] == 3
        assert len(summary.metadata["session_ids"]) == 3

    def test_swept_session_cannot_be_touched(
        self, registry: SessionRegistry, clock: ManualClock
    ) -> None:
        session = registry.create("alice").session
        clock.advance(minutes=31)
        registry.sweep_expired()
        with pytest.raises(SessionExpired):
            registry.touch(session.id)


class TestSessionConfig:
    def test_warning_must_be_shorter_than_idle(self) -> None:
        with pytest.raises(ValidationError):
            SessionConfig(idle_timeout_minutes=5, warning_minutes=5)

    def test_idle_cannot_exceed_absolute(self) -> None:
        with pytest.raises(ValidationError):
            SessionConfig(idle_timeout_minutes=120, absolute_timeout_hours=1)

    def test_limit_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SessionConfig(max_concurrent=0)
