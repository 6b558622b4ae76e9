"""
Compliance audit report: activity summary plus an embedded integrity check.

The report reads the ledger; generating it is itself audited
(``AUDIT_REPORT_GENERATED``) so report access leaves a trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from vigil.core.audit.ledger import IntegrityChain, VerificationReport
from vigil.core.audit.models import EventType, Resource
from vigil.core.store.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventTypeSummary:
    event_type: str
    count: int
    unique_actors: int
    denied: int


@dataclass(frozen=True)
class AuditReport:
    generated_at: datetime
    start: datetime | None
    end: datetime | None
    total_events: int
    denied_events: int
    by_event_type: tuple[EventTypeSummary, ...]
    top_offenders: tuple[dict[str, Any], ...]
    incidents: tuple[dict[str, Any], ...]
    integrity: VerificationReport
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.integrity.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "total_events": self.total_events,
            "denied_events": self.denied_events,
            "by_event_type": [vars(s) for s in self.by_event_type],
            "top_offenders": list(self.top_offenders),
            "incidents": list(self.incidents),
            "integrity": self.integrity.to_dict(),
            **self.extra,
        }


def generate_report(
    chain: IntegrityChain,
    db: Database,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    requested_by: str | None = None,
    offender_limit: int = 10,
) -> AuditReport:
    """Build an :class:`AuditReport` for ``[start, end]`` (open-ended when None)."""
    integrity = chain.verify_range(start, end)
    summary = tuple(
        EventTypeSummary(
            event_type=row["event_type"],
            count=int(row["count"]),
            unique_actors=int(row["unique_actors"]),
            denied=int(row["denied"] or 0),
        )
        for row in db.audit_summary(start, end)
    )
    incidents = tuple(
        i.to_dict()
        for i in db.list_incidents(limit=1000)
        if (start is None or i.created_at >= start) and (end is None or i.created_at <= end)
    )
    report = AuditReport(
        generated_at=integrity.verified_at,
        start=start,
        end=end,
        total_events=sum(s.count for s in summary),
        denied_events=sum(s.denied for s in summary),
        by_event_type=summary,
        top_offenders=tuple(db.top_offenders(start, end, offender_limit)),
        incidents=incidents,
        integrity=integrity,
    )

    chain.record(
        EventType.AUDIT_REPORT_GENERATED,
        "generate_report",
        resource=Resource(type="audit_report"),
        metadata={
            "requested_by": requested_by,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "total_events": report.total_events,
            "integrity_ok": integrity.ok,
        },
    )
    logger.info(
        "Audit report generated: %d events, %d denied, integrity %s",
        report.total_events,
        report.denied_events,
        "ok" if integrity.ok else "FAILED",
    )
    return report
