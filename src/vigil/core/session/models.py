"""Session data model."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any


class SessionState(StrEnum):
    ACTIVE = "active"
    IDLE_EXPIRED = "idle_expired"
    ABSOLUTE_EXPIRED = "absolute_expired"
    EVICTED = "evicted"
    LOGGED_OUT = "logged_out"


class EndReason(StrEnum):
    """Reason codes recorded when a session leaves the active state."""

    LOGOUT = "LOGOUT"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    ABSOLUTE_TIMEOUT = "ABSOLUTE_TIMEOUT"
    CONCURRENT_LIMIT_EXCEEDED = "CONCURRENT_LIMIT_EXCEEDED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SECURITY_RESPONSE = "SECURITY_RESPONSE"


# Terminal state for each end reason; anything administrative is a logout.
STATE_FOR_REASON: dict[EndReason, SessionState] = {
    EndReason.IDLE_TIMEOUT: SessionState.IDLE_EXPIRED,
    EndReason.ABSOLUTE_TIMEOUT: SessionState.ABSOLUTE_EXPIRED,
    EndReason.CONCURRENT_LIMIT_EXCEEDED: SessionState.EVICTED,
}


def token_ref(token: str) -> str:
    """Stored reference for a bearer token; the token itself is never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Session:
    id: str
    principal_id: str
    token_ref: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    ip_address: str = ""
    user_agent: str = ""
    state: SessionState = SessionState.ACTIVE
    ended_at: datetime | None = None
    end_reason: str = ""

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def expiry_reason(self, now: datetime) -> EndReason | None:
        """Which timeout, if any, has elapsed at *now*."""
        if now >= self.absolute_expires_at:
            return EndReason.ABSOLUTE_TIMEOUT
        if now >= self.expires_at:
            return EndReason.IDLE_TIMEOUT
        return None

    def remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))

    def ended(self, reason: EndReason, at: datetime) -> Session:
        return replace(
            self,
            state=STATE_FOR_REASON.get(reason, SessionState.LOGGED_OUT),
            ended_at=at,
            end_reason=str(reason),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "absolute_expires_at": self.absolute_expires_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "state": str(self.state),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason,
        }


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session plus the bearer token, returned exactly once."""

    session: Session
    token: str


@dataclass(frozen=True)
class TouchResult:
    session: Session
    warning: bool
    remaining: timedelta
