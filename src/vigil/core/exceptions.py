"""Vigil exception hierarchy."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class VigilError(Exception):
    """Base exception for all Vigil errors."""


class ConfigError(VigilError):
    """Raised when the configuration is invalid or cannot be read."""


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""


# ---------------------------------------------------------------------------
# Storage / ledger
# ---------------------------------------------------------------------------


class StorageError(VigilError):
    """Raised when the persistence layer fails."""


class TransientStorageFailure(StorageError):
    """Raised when a write or read could not complete within its time budget."""


class IntegrityViolationError(VigilError):
    """Raised when the audit chain fails verification."""

    def __init__(self, message: str, violations: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.violations = list(violations)


class MetadataError(ValueError):
    """Raised when audit metadata does not fit the bounded schema."""


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionError(VigilError):
    """Raised when a session cannot be used; the caller must re-authenticate."""

    reauthenticate = True

    def __init__(self, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionExpired(SessionError):
    """Raised when the idle or absolute timeout has elapsed."""


class SessionEvicted(SessionError):
    """Raised when the session was displaced by a newer one."""


class SessionNotFound(SessionError):
    """Raised when no usable session matches the identifier or token."""


# ---------------------------------------------------------------------------
# Detection / credentials
# ---------------------------------------------------------------------------


class PolicyRejected(VigilError):
    """Raised when a credential fails policy; ``reasons`` lists every unmet rule."""

    def __init__(self, reasons: Sequence[str], message: str = "") -> None:
        self.reasons = list(reasons)
        super().__init__(message or "credential rejected: " + ", ".join(self.reasons))


class AccountLocked(PolicyRejected):
    """Raised when authentication is attempted on a locked account."""

    def __init__(self, principal_id: str, locked_until: Any = None) -> None:
        super().__init__(["ACCOUNT_LOCKED"], f"account {principal_id} is locked")
        self.principal_id = principal_id
        self.locked_until = locked_until


class PasswordExpired(PolicyRejected):
    """Raised when the principal's password is past its maximum age."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(["PASSWORD_EXPIRED"], f"password for {principal_id} has expired")
        self.principal_id = principal_id


class BreachCheckUnavailable(VigilError):
    """Raised by a breach-check adapter when the lookup service cannot be reached."""
