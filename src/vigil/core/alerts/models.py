"""Alert and incident data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    """Severity levels, ordered LOW → CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class AlertType(StrEnum):
    BRUTE_FORCE_DETECTED = "BRUTE_FORCE_DETECTED"
    EXCESSIVE_ADMIN_ACTIVITY = "EXCESSIVE_ADMIN_ACTIVITY"
    EXCESSIVE_DATA_EXPORT = "EXCESSIVE_DATA_EXPORT"
    MASS_SESSION_TIMEOUT = "MASS_SESSION_TIMEOUT"
    IMPOSSIBLE_TRAVEL_DETECTED = "IMPOSSIBLE_TRAVEL_DETECTED"
    INJECTION_ATTEMPT_DETECTED = "INJECTION_ATTEMPT_DETECTED"
    CRITICAL_SYSTEM_CHANGE = "CRITICAL_SYSTEM_CHANGE"
    ABNORMAL_ACCESS_PATTERN = "ABNORMAL_ACCESS_PATTERN"
    INTEGRITY_VIOLATION_DETECTED = "INTEGRITY_VIOLATION_DETECTED"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    COMPLIANCE_VIOLATIONS_DETECTED = "COMPLIANCE_VIOLATIONS_DETECTED"


class IncidentStatus(StrEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass(frozen=True)
class Alert:
    type: str
    severity: Severity
    timestamp: datetime
    subject: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    audit_entry_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "severity": str(self.severity),
            "timestamp": self.timestamp.isoformat(),
            "subject": self.subject,
            "details": self.details,
            "audit_entry_id": self.audit_entry_id,
        }


@dataclass(frozen=True)
class Incident:
    id: str
    type: str
    severity: Severity
    status: IncidentStatus
    created_at: datetime
    updated_at: datetime
    audit_entry_id: int | None = None
    subject: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": str(self.type),
            "severity": str(self.severity),
            "status": str(self.status),
            "audit_entry_id": self.audit_entry_id,
            "subject": self.subject,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
