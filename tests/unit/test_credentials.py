"""Unit tests for vigil.core.credentials.policy — CredentialPolicyEngine."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from argon2 import PasswordHasher

from vigil.core.alerts.models import Alert, AlertType
from vigil.core.audit.ledger import IntegrityChain
from vigil.core.audit.models import EventType
from vigil.core.clock import ManualClock
from vigil.core.config import CredentialConfig
from vigil.core.credentials.breach import BreachCheckPort, sha1_split
from vigil.core.credentials.models import LoginCheck, RuleCode
from vigil.core.credentials.policy import CredentialPolicyEngine, find_weaknesses
from vigil.core.exceptions import (
    AccountLocked,
    BreachCheckUnavailable,
    PasswordExpired,
    PolicyRejected,
)
from vigil.core.store.database import Database

STRONG = ("Vivid7Harbor!Lamp", "Quiet8Meadow!Rope", "Bright9Canyon!Fern")
BREACHED = "Passw0rd1234"


class FakeBreach(BreachCheckPort):
    def __init__(self, *passwords: str, occurrences: int = 42) -> None:
        self.prefixes: list[str] = []
        self._hits: dict[str, dict[str, int]] = {}
        for pw in passwords:
            prefix, suffix = sha1_split(pw)
            self._hits.setdefault(prefix, {})[suffix] = occurrences

    def check_prefix(self, prefix: str) -> dict[str, int]:
        self.prefixes.append(prefix)
        return self._hits.get(prefix, {})


class UnavailableBreach(BreachCheckPort):
    def check_prefix(self, prefix: str) -> dict[str, int]:
        raise BreachCheckUnavailable("connection refused")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "credentials_test.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def chain(db: Database, clock: ManualClock) -> IntegrityChain:
    c = IntegrityChain(db, clock=clock)
    c.initialize()
    return c


@pytest.fixture
def hasher() -> PasswordHasher:
    # Minimal cost parameters keep the suite fast
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


def _engine(
    db: Database,
    chain: IntegrityChain,
    clock: ManualClock,
    hasher: PasswordHasher,
    **kwargs: object,
) -> CredentialPolicyEngine:
    return CredentialPolicyEngine(db, chain=chain, clock=clock, hasher=hasher, **kwargs)


@pytest.fixture
def engine(
    db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
) -> CredentialPolicyEngine:
    return _engine(db, chain, clock, hasher)


class TestStrength:
    def test_strong_password(self, engine: CredentialPolicyEngine) -> None:
        result = engine.score(STRONG[0])
        assert result.valid
        assert result.failures == ()
        assert result.weaknesses == ()
        assert result.score == 85

    def test_failures_are_itemized(self, engine: CredentialPolicyEngine) -> None:
        result = engine.score("short")
        assert not result.valid
        assert result.failures == (
            RuleCode.PASSWORD_TOO_SHORT,
            RuleCode.MISSING_UPPERCASE,
            RuleCode.MISSING_DIGIT,
        )

    def test_symbol_requirement(
        self, db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
    ) -> None:
        engine = _engine(
            db, chain, clock, hasher, config=CredentialConfig(require_symbol=True)
        )
        assert RuleCode.MISSING_SYMBOL in engine.score("Vivid7HarborLamp").failures

    def test_weaknesses_lower_score(self, engine: CredentialPolicyEngine) -> None:
        assert engine.score("Aaaa1234Password").score < engine.score(STRONG[1]).score

    @pytest.mark.parametrize(
        ("password", "weakness"),
        [
            ("Mooo9Lantern", "repeated_characters"),
            ("MyAdmin77Home", "common_word"),
            ("Lantern789Mo", "sequential_characters"),
            ("Lantern987Mo", "sequential_characters"),
        ],
    )
    def test_find_weaknesses(self, password: str, weakness: str) -> None:
        assert weakness in find_weaknesses(password)

    def test_min_length_floor(self) -> None:
        with pytest.raises(ValueError):
            CredentialConfig(min_length=6)


class TestValidate:
    def test_rejection_lists_every_reason(self, engine: CredentialPolicyEngine) -> None:
        with pytest.raises(PolicyRejected) as exc_info:
            engine.validate("u1", "short")
        assert exc_info.value.reasons == [
            "PASSWORD_TOO_SHORT",
            "MISSING_UPPERCASE",
            "MISSING_DIGIT",
        ]

    def test_breached_password_rejected(
        self, db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
    ) -> None:
        breach = FakeBreach(BREACHED)
        engine = _engine(db, chain, clock, hasher, breach=breach)
        decision = engine.evaluate("u1", BREACHED)
        assert decision.reasons == ("PASSWORD_COMPROMISED",)
        assert decision.breach.occurrences == 42
        # Only the five-character prefix is sent to the lookup service
        assert breach.prefixes == [sha1_split(BREACHED)[0]]
        assert len(breach.prefixes[0]) == 5

    def test_unbreached_password_accepted(
        self, db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
    ) -> None:
        engine = _engine(db, chain, clock, hasher, breach=FakeBreach(BREACHED))
        decision = engine.validate("u1", STRONG[0])
        assert decision.accepted
        assert decision.breach.checked

    def test_unavailable_breach_service_is_a_compliance_gap(
        self,
        db: Database,
        chain: IntegrityChain,
        clock: ManualClock,
        hasher: PasswordHasher,
    ) -> None:
        engine = _engine(db, chain, clock, hasher, breach=UnavailableBreach())
        decision = engine.validate("u1", STRONG[0])
        assert decision.accepted
        assert not decision.breach.checked
        assert engine.compliance_gaps == 1
        assert db.count_audit_entries(event_types=[EventType.COMPLIANCE_GAP]) == 1


class TestChangePassword:
    def test_change_is_audited(self, engine: CredentialPolicyEngine, db: Database) -> None:
        engine.change_password("u1", STRONG[0])
        assert db.count_audit_entries(event_types=[EventType.PASSWORD_CHANGED]) == 1
        record = db.get_credential("u1")
        assert record is not None
        assert record.last_password_change is not None

    def test_history_is_hashed(self, engine: CredentialPolicyEngine, db: Database) -> None:
        engine.change_password("u1", STRONG[0])
        (stored,) = db.password_history("u1", 10)
        assert STRONG[0] not in stored
        assert stored.startswith("$argon2")

    def test_reuse_rejected_within_history(
        self, db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
    ) -> None:
        engine = _engine(db, chain, clock, hasher, config=CredentialConfig(history_count=2))
        engine.change_password("u1", STRONG[0])
        engine.change_password("u1", STRONG[1])
        with pytest.raises(PolicyRejected) as exc_info:
            engine.change_password("u1", STRONG[0])
        assert exc_info.value.reasons == ["PASSWORD_REUSED"]

    def test_reuse_allowed_after_history_rolls_over(
        self, db: Database, chain: IntegrityChain, clock: ManualClock, hasher: PasswordHasher
    ) -> None:
        engine = _engine(db, chain, clock, hasher, config=CredentialConfig(history_count=2))
        for pw in STRONG:
            engine.change_password("u1", pw)
        assert len(db.password_history("u1", 10)) == 2
        assert engine.change_password("u1", STRONG[0]).accepted

    def test_history_is_per_principal(self, engine: CredentialPolicyEngine) -> None:
        engine.change_password("u1", STRONG[0])
        assert engine.change_password("u2", STRONG[0]).accepted

    def test_rejected_change_stores_nothing(
        self, engine: CredentialPolicyEngine, db: Database
    ) -> None:
        with pytest.raises(PolicyRejected):
            engine.change_password("u1", "short")
        assert db.password_history("u1", 10) == []
        assert db.get_credential("u1") is None


class TestLockout:
    def test_locks_after_max_attempts(
        self, engine: CredentialPolicyEngine, db: Database, clock: ManualClock
    ) -> None:
        alerts: list[Alert] = []
        engine.add_sink(alerts.append)
        for _ in range(4):
            engine.record_failed_attempt("u1")
        assert engine.check_login("u1") is LoginCheck.OK
        assert alerts == []

        record = engine.record_failed_attempt("u1")
        assert record.locked_until == clock.now() + timedelta(minutes=30)
        assert engine.check_login("u1") is LoginCheck.ACCOUNT_LOCKED
        assert [a.type for a in alerts] == [AlertType.ACCOUNT_LOCKOUT]
        assert db.count_audit_entries(event_types=[EventType.ACCOUNT_LOCKOUT]) == 1
        with pytest.raises(AccountLocked) as exc_info:
            engine.require_login_allowed("u1")
        assert exc_info.value.locked_until == record.locked_until

    def test_lock_lapses(self, engine: CredentialPolicyEngine, clock: ManualClock) -> None:
        for _ in range(5):
            engine.record_failed_attempt("u1")
        clock.advance(minutes=31)
        assert engine.check_login("u1") is LoginCheck.OK

    def test_attempts_while_locked_do_not_extend(
        self, engine: CredentialPolicyEngine, clock: ManualClock
    ) -> None:
        for _ in range(5):
            first = engine.record_failed_attempt("u1")
        clock.advance(minutes=10)
        assert engine.record_failed_attempt("u1").locked_until == first.locked_until

    def test_success_resets_counter(self, engine: CredentialPolicyEngine, db: Database) -> None:
        for _ in range(3):
            engine.record_failed_attempt("u1")
        engine.record_successful_login("u1")
        assert db.get_credential("u1").failed_attempts == 0

    def test_unknown_principal_is_ok(self, engine: CredentialPolicyEngine) -> None:
        assert engine.check_login("nobody") is LoginCheck.OK
        engine.require_login_allowed("nobody")


class TestExpiry:
    def test_password_expires(
        self, engine: CredentialPolicyEngine, db: Database, clock: ManualClock
    ) -> None:
        engine.change_password("u1", STRONG[0])
        clock.advance(days=365)
        assert engine.check_login("u1") is LoginCheck.OK
        clock.advance(days=1)
        assert engine.check_login("u1") is LoginCheck.PASSWORD_EXPIRED
        with pytest.raises(PasswordExpired):
            engine.require_login_allowed("u1")
        assert db.count_audit_entries(event_types=[EventType.PASSWORD_EXPIRED]) == 1

    def test_never_expires_flag(self, engine: CredentialPolicyEngine, clock: ManualClock) -> None:
        engine.change_password("svc", STRONG[0])
        engine.set_password_never_expires("svc")
        clock.advance(days=400)
        assert engine.check_login("svc") is LoginCheck.OK

    def test_overdue_credentials(
        self, engine: CredentialPolicyEngine, clock: ManualClock
    ) -> None:
        engine.change_password("old", STRONG[0])
        clock.advance(days=200)
        engine.change_password("new", STRONG[1])
        clock.advance(days=170)
        assert [r.principal_id for r in engine.overdue_credentials()] == ["old"]
