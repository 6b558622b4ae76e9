"""Periodic security metrics rollup."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from vigil.core.audit.models import EventType
from vigil.core.clock import Clock, SystemClock
from vigil.core.constants import (
    METRICS_INTERVAL_SECONDS,
    OPEN_INCIDENTS_CRITICAL,
    OPEN_INCIDENTS_WARNING,
)
from vigil.core.store.database import Database

logger = logging.getLogger(__name__)

SECURITY_EVENTS: frozenset[str] = frozenset(
    {
        EventType.LOGIN_FAILED,
        EventType.ACCOUNT_LOCKOUT,
        EventType.ACCESS_DENIED,
        EventType.INVALID_REQUEST,
        EventType.INJECTION_ATTEMPT,
        EventType.SECURITY_INCIDENT,
        EventType.INTEGRITY_VIOLATION,
        EventType.COMPLIANCE_GAP,
    }
)


class SystemHealth(StrEnum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


def health_for(open_incidents: int) -> SystemHealth:
    if open_incidents > OPEN_INCIDENTS_CRITICAL:
        return SystemHealth.CRITICAL
    if open_incidents > OPEN_INCIDENTS_WARNING:
        return SystemHealth.WARNING
    return SystemHealth.NORMAL


@dataclass(frozen=True)
class MetricsSnapshot:
    recorded_at: datetime
    total_events: int
    security_events: int
    alerts: int
    incidents: int
    open_incidents: int
    system_health: SystemHealth

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.isoformat()
        data["system_health"] = str(self.system_health)
        return data


class MetricsCollector:
    """Counts ledger and incident activity over the last interval and stores it."""

    def __init__(
        self,
        db: Database,
        *,
        clock: Clock | None = None,
        interval: timedelta = timedelta(seconds=METRICS_INTERVAL_SECONDS),
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._interval = interval

    def collect(self) -> MetricsSnapshot:
        now = self._clock.now()
        since = now - self._interval
        open_incidents = self._db.count_open_incidents()
        snapshot = MetricsSnapshot(
            recorded_at=now,
            total_events=self._db.count_audit_entries(since),
            security_events=self._db.count_audit_entries(since, SECURITY_EVENTS),
            alerts=self._db.count_audit_entries(since, [EventType.SECURITY_INCIDENT]),
            incidents=self._db.count_incidents(since),
            open_incidents=open_incidents,
            system_health=health_for(open_incidents),
        )
        return snapshot

    def rollup(self) -> MetricsSnapshot:
        """Collect and persist one snapshot."""
        snapshot = self.collect()
        values = snapshot.to_dict()
        values.pop("recorded_at")
        self._db.insert_metrics(snapshot.recorded_at, values)
        if snapshot.system_health is not SystemHealth.NORMAL:
            logger.warning(
                "System health %s: %d open incident(s)",
                snapshot.system_health,
                snapshot.open_incidents,
            )
        else:
            logger.debug("Metrics rollup: %s", values)
        return snapshot
