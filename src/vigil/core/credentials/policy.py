"""
CredentialPolicyEngine — password strength, history, breach, expiry and lockout.

Rejections are always itemized: ``validate`` collects every unmet rule
before raising, so the caller can show the full list at once.

A breach service that cannot be reached is a soft failure: the password
is accepted and the gap is logged and written to the ledger.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from vigil.core.alerts.dispatcher import classify
from vigil.core.alerts.models import Alert, AlertType
from vigil.core.audit.models import AccessResult, Actor, EventType, Resource
from vigil.core.clock import Clock, SystemClock
from vigil.core.config import CredentialConfig
from vigil.core.credentials.breach import BreachCheckPort, DisabledBreachCheck, check_password
from vigil.core.credentials.models import (
    BreachResult,
    CredentialRecord,
    LoginCheck,
    PolicyDecision,
    RuleCode,
    StrengthResult,
)
from vigil.core.exceptions import (
    AccountLocked,
    BreachCheckUnavailable,
    PasswordExpired,
    PolicyRejected,
)
from vigil.core.store.ports import CredentialStore

if TYPE_CHECKING:
    from vigil.core.audit.ledger import IntegrityChain

logger = logging.getLogger(__name__)

AlertSink = Callable[[Alert], Any]

COMMON_SUBSTRINGS: tuple[str, ...] = ("password", "admin", "login", "qwerty", "letmein", "welcome")

_SEQUENCES = (
    "0123456789",
    "abcdefghijklmnopqrstuvwxyz",
    "qwertyuiopasdfghjklzxcvbnm",
)
_REPEAT_RE = re.compile(r"(.)\1{2,}")
_SYMBOL_RE = re.compile(r"[^A-Za-z0-9]")


def _has_sequence(password: str, run: int = 3) -> bool:
    lowered = password.lower()
    for seq in _SEQUENCES:
        for i in range(len(seq) - run + 1):
            chunk = seq[i : i + run]
            if chunk in lowered or chunk[::-1] in lowered:
                return True
    return False


def find_weaknesses(password: str) -> list[str]:
    """Named weakness categories present in *password*."""
    found: list[str] = []
    if _REPEAT_RE.search(password):
        found.append("repeated_characters")
    lowered = password.lower()
    if any(word in lowered for word in COMMON_SUBSTRINGS):
        found.append("common_word")
    if _has_sequence(password):
        found.append("sequential_characters")
    return found


class CredentialPolicyEngine:
    """
    Usage::

        engine = CredentialPolicyEngine(db, chain=chain, breach=PwnedPasswordsClient())
        engine.validate("u1", candidate)          # raises PolicyRejected
        engine.change_password("u1", candidate)
        engine.check_login("u1")                  # LoginCheck.OK / ...
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        chain: IntegrityChain | None = None,
        clock: Clock | None = None,
        config: CredentialConfig | None = None,
        breach: BreachCheckPort | None = None,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._clock = clock or SystemClock()
        self._config = config or CredentialConfig()
        self._breach = breach or DisabledBreachCheck()
        self._hasher = hasher or PasswordHasher()
        self._lock = threading.Lock()
        self._sinks: list[AlertSink] = []
        self.compliance_gaps = 0

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def _audit(
        self,
        event_type: EventType,
        principal_id: str,
        *,
        result: AccessResult = AccessResult.GRANTED,
        **metadata: Any,
    ) -> None:
        if self._chain is None:
            return
        self._chain.record(
            event_type,
            str(event_type).lower(),
            actor=Actor(principal_id=principal_id or None),
            resource=Resource(type="credential", id=principal_id),
            result=result,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Strength
    # ------------------------------------------------------------------

    def score(self, password: str) -> StrengthResult:
        cfg = self._config
        failures: list[RuleCode] = []
        has_lower = any(c.islower() for c in password)
        has_upper = any(c.isupper() for c in password)
        has_digit = any(c.isdigit() for c in password)
        has_symbol = bool(_SYMBOL_RE.search(password))

        if len(password) < cfg.min_length:
            failures.append(RuleCode.PASSWORD_TOO_SHORT)
        if not has_lower:
            failures.append(RuleCode.MISSING_LOWERCASE)
        if not has_upper:
            failures.append(RuleCode.MISSING_UPPERCASE)
        if not has_digit:
            failures.append(RuleCode.MISSING_DIGIT)
        if cfg.require_symbol and not has_symbol:
            failures.append(RuleCode.MISSING_SYMBOL)

        score = 0
        if len(password) >= cfg.min_length:
            score += 25 + min(20, len(password) - cfg.min_length)
        score += 15 * sum((has_lower, has_upper, has_digit))
        if has_symbol:
            score += 10

        weaknesses = find_weaknesses(password)
        score -= 20 * len(weaknesses)
        return StrengthResult(
            valid=not failures,
            score=max(0, min(100, score)),
            failures=tuple(failures),
            weaknesses=tuple(weaknesses),
        )

    # ------------------------------------------------------------------
    # Breach
    # ------------------------------------------------------------------

    def check_breach(self, password: str, principal_id: str = "") -> BreachResult:
        """Soft-fails to ``checked=False`` when the lookup service is unavailable."""
        try:
            return check_password(self._breach, password)
        except BreachCheckUnavailable as exc:
            self.compliance_gaps += 1
            logger.error(
                "Compliance gap: breach check skipped for %s: %s", principal_id or "-", exc
            )
            self._audit(
                EventType.COMPLIANCE_GAP,
                principal_id,
                result=AccessResult.FAILED,
                control="password_breach_check",
                error=str(exc),
            )
            return BreachResult(compromised=False, checked=False)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def is_recently_used(self, principal_id: str, password: str) -> bool:
        for stored in self._store.password_history(principal_id, self._config.history_count):
            try:
                if self._hasher.verify(stored, password):
                    return True
            except VerifyMismatchError:
                continue
            except (InvalidHashError, VerificationError) as exc:
                logger.warning("Unreadable password history hash for %s: %s", principal_id, exc)
        return False

    # ------------------------------------------------------------------
    # Validate / change
    # ------------------------------------------------------------------

    def evaluate(self, principal_id: str, password: str) -> PolicyDecision:
        strength = self.score(password)
        reasons: list[str] = [str(code) for code in strength.failures]
        if self.is_recently_used(principal_id, password):
            reasons.append(str(RuleCode.PASSWORD_REUSED))
        breach = self.check_breach(password, principal_id)
        if breach.compromised:
            reasons.append(str(RuleCode.PASSWORD_COMPROMISED))
        return PolicyDecision(strength=strength, breach=breach, reasons=tuple(reasons))

    def validate(self, principal_id: str, password: str) -> PolicyDecision:
        """
        Check *password* against every rule.

        Raises:
            PolicyRejected: with every unmet rule in ``reasons``.
        """
        decision = self.evaluate(principal_id, password)
        if not decision.accepted:
            raise PolicyRejected(decision.reasons)
        return decision

    def change_password(self, principal_id: str, password: str) -> PolicyDecision:
        """Validate, record history and reset lockout; audited as PASSWORD_CHANGED."""
        decision = self.validate(principal_id, password)
        now = self._clock.now()
        with self._lock:
            self._store.add_password_history(
                principal_id,
                self._hasher.hash(password),
                now,
                keep=self._config.history_count,
            )
            record = self._record(principal_id)
            self._store.save_credential(
                replace(record, last_password_change=now, failed_attempts=0, locked_until=None)
            )
        self._audit(
            EventType.PASSWORD_CHANGED,
            principal_id,
            score=decision.strength.score,
            breach_checked=decision.breach.checked,
        )
        return decision

    # ------------------------------------------------------------------
    # Expiry / lockout
    # ------------------------------------------------------------------

    def _record(self, principal_id: str) -> CredentialRecord:
        return self._store.get_credential(principal_id) or CredentialRecord(principal_id)

    def is_expired(self, record: CredentialRecord, now: datetime | None = None) -> bool:
        if record.password_never_expires or record.last_password_change is None:
            return False
        now = now or self._clock.now()
        return now - record.last_password_change > timedelta(days=self._config.max_age_days)

    def check_login(self, principal_id: str) -> LoginCheck:
        record = self._store.get_credential(principal_id)
        if record is None:
            return LoginCheck.OK
        now = self._clock.now()
        if record.is_locked(now):
            return LoginCheck.ACCOUNT_LOCKED
        if self.is_expired(record, now):
            return LoginCheck.PASSWORD_EXPIRED
        return LoginCheck.OK

    def require_login_allowed(self, principal_id: str) -> None:
        """
        Raises:
            AccountLocked: the principal is inside a lockout period.
            PasswordExpired: the password is past its maximum age.
        """
        check = self.check_login(principal_id)
        if check is LoginCheck.ACCOUNT_LOCKED:
            record = self._record(principal_id)
            raise AccountLocked(principal_id, record.locked_until)
        if check is LoginCheck.PASSWORD_EXPIRED:
            self._audit(EventType.PASSWORD_EXPIRED, principal_id, result=AccessResult.DENIED)
            raise PasswordExpired(principal_id)

    def record_failed_attempt(self, principal_id: str) -> CredentialRecord:
        """Count a failed login; locks the account once the limit is reached."""
        cfg = self._config
        now = self._clock.now()
        with self._lock:
            record = self._record(principal_id)
            attempts = record.failed_attempts + 1
            locked_until = record.locked_until
            newly_locked = attempts >= cfg.max_failed_attempts and not record.is_locked(now)
            if newly_locked:
                locked_until = now + timedelta(minutes=cfg.lockout_minutes)
            record = replace(record, failed_attempts=attempts, locked_until=locked_until)
            self._store.save_credential(record)

        if newly_locked:
            logger.warning(
                "Account %s locked until %s after %d failed attempts",
                principal_id,
                locked_until,
                attempts,
            )
            self._audit(
                EventType.ACCOUNT_LOCKOUT,
                principal_id,
                result=AccessResult.DENIED,
                failed_attempts=attempts,
                lockout_minutes=cfg.lockout_minutes,
            )
            self._emit(
                Alert(
                    type=AlertType.ACCOUNT_LOCKOUT,
                    severity=classify(AlertType.ACCOUNT_LOCKOUT),
                    timestamp=now,
                    subject=principal_id,
                    details={"failed_attempts": attempts},
                )
            )
        return record

    def record_successful_login(self, principal_id: str) -> None:
        with self._lock:
            record = self._record(principal_id)
            if record.failed_attempts or record.locked_until is not None:
                self._store.save_credential(replace(record, failed_attempts=0, locked_until=None))

    def _emit(self, alert: Alert) -> None:
        for sink in list(self._sinks):
            try:
                sink(alert)
            except Exception:  # noqa: BLE001
                logger.exception("Alert sink %r failed for %s", sink, alert.type)

    def set_password_never_expires(self, principal_id: str, never: bool = True) -> None:
        with self._lock:
            record = self._record(principal_id)
            self._store.save_credential(replace(record, password_never_expires=never))

    def overdue_credentials(self, now: datetime | None = None) -> list[CredentialRecord]:
        """Records whose password has passed the maximum age."""
        now = now or self._clock.now()
        return [r for r in self._store.list_credentials() if self.is_expired(r, now)]
