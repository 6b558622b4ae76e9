"""Credential policy data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class RuleCode(StrEnum):
    PASSWORD_TOO_SHORT = "PASSWORD_TOO_SHORT"
    MISSING_LOWERCASE = "MISSING_LOWERCASE"
    MISSING_UPPERCASE = "MISSING_UPPERCASE"
    MISSING_DIGIT = "MISSING_DIGIT"
    MISSING_SYMBOL = "MISSING_SYMBOL"
    PASSWORD_WEAK = "PASSWORD_WEAK"
    PASSWORD_REUSED = "PASSWORD_REUSED"
    PASSWORD_COMPROMISED = "PASSWORD_COMPROMISED"


class LoginCheck(StrEnum):
    OK = "OK"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"


@dataclass(frozen=True)
class StrengthResult:
    valid: bool
    score: int
    failures: tuple[RuleCode, ...] = ()
    weaknesses: tuple[str, ...] = ()


@dataclass(frozen=True)
class BreachResult:
    compromised: bool
    checked: bool
    occurrences: int = 0


@dataclass(frozen=True)
class CredentialRecord:
    principal_id: str
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_password_change: datetime | None = None
    password_never_expires: bool = False

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of validating a candidate password; ``reasons`` is empty on success."""

    strength: StrengthResult
    breach: BreachResult
    reasons: tuple[str, ...] = field(default=())

    @property
    def accepted(self) -> bool:
        return not self.reasons
