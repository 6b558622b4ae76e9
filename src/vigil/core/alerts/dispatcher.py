"""
AlertDispatcher — classify alerts, open incidents, notify.

Escalation rules:
  - high / critical  → always open an incident
  - low / medium     → open an incident only once the same alert type has
                       recurred ``repeat_threshold`` times within the repeat
                       window; the recurrence counter then restarts

Every dispatched alert is also written to the ledger as a
SECURITY_INCIDENT entry. Notification is fire-and-forget: a failed
notification is logged and never rolls back the incident.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import TYPE_CHECKING

from vigil.core.alerts.models import Alert, AlertType, Incident, IncidentStatus, Severity
from vigil.core.alerts.notify import DisabledNotifier, NotificationPort
from vigil.core.audit.models import EventType
from vigil.core.clock import Clock, SystemClock
from vigil.core.constants import INCIDENT_REPEAT_THRESHOLD, INCIDENT_REPEAT_WINDOW_HOURS
from vigil.core.exceptions import StorageError
from vigil.core.monitor.window import EventWindowTracker
from vigil.core.store.ports import IncidentStore

if TYPE_CHECKING:
    from vigil.core.audit.ledger import IntegrityChain

logger = logging.getLogger(__name__)

SEVERITY_BY_TYPE: dict[str, Severity] = {
    AlertType.BRUTE_FORCE_DETECTED: Severity.CRITICAL,
    AlertType.INJECTION_ATTEMPT_DETECTED: Severity.CRITICAL,
    AlertType.CRITICAL_SYSTEM_CHANGE: Severity.CRITICAL,
    AlertType.INTEGRITY_VIOLATION_DETECTED: Severity.CRITICAL,
    AlertType.IMPOSSIBLE_TRAVEL_DETECTED: Severity.HIGH,
    AlertType.EXCESSIVE_DATA_EXPORT: Severity.HIGH,
    AlertType.EXCESSIVE_ADMIN_ACTIVITY: Severity.HIGH,
    AlertType.COMPLIANCE_VIOLATIONS_DETECTED: Severity.HIGH,
    AlertType.MASS_SESSION_TIMEOUT: Severity.MEDIUM,
    AlertType.ABNORMAL_ACCESS_PATTERN: Severity.MEDIUM,
    AlertType.ACCOUNT_LOCKOUT: Severity.MEDIUM,
}


def classify(alert_type: str) -> Severity:
    """Static severity for *alert_type*; unknown types are medium."""
    return SEVERITY_BY_TYPE.get(str(alert_type), Severity.MEDIUM)


class AlertDispatcher:
    """
    Usage::

        dispatcher = AlertDispatcher(db, LoggingNotifier(), chain=chain)
        incident = dispatcher.dispatch(alert)   # None when below the repeat threshold
    """

    def __init__(
        self,
        store: IncidentStore,
        notifier: NotificationPort | None = None,
        *,
        chain: IntegrityChain | None = None,
        clock: Clock | None = None,
        repeat_threshold: int = INCIDENT_REPEAT_THRESHOLD,
        repeat_window: timedelta = timedelta(hours=INCIDENT_REPEAT_WINDOW_HOURS),
        notify_in_background: bool = True,
    ) -> None:
        self._store = store
        self._notifier = notifier or DisabledNotifier()
        self._chain = chain
        self._clock = clock or SystemClock()
        self._repeat_threshold = max(1, repeat_threshold)
        self._repeat_window = repeat_window
        self._recurrence = EventWindowTracker(
            self._clock, retention={"alert": repeat_window}, max_events_per_key=10_000
        )
        self._executor = (
            ThreadPoolExecutor(max_workers=2, thread_name_prefix="vigil-notify")
            if notify_in_background
            else None
        )
        self.alerts_dispatched = 0
        self.incidents_created = 0

    def attach_chain(self, chain: IntegrityChain) -> None:
        self._chain = chain

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, alert: Alert) -> Incident | None:
        severity = classify(alert.type)
        self.alerts_dispatched += 1
        logger.warning(
            "Security alert %s [%s] subject=%s", alert.type, severity, alert.subject or "-"
        )

        incident_entry_id = self._record_alert(alert, severity)

        if severity.rank < Severity.HIGH.rank and not self._recurred(alert):
            return None

        now = self._clock.now()
        incident = Incident(
            id=str(uuid.uuid4()),
            type=str(alert.type),
            severity=severity,
            status=IncidentStatus.OPEN,
            created_at=now,
            updated_at=now,
            audit_entry_id=alert.audit_entry_id or incident_entry_id,
            subject=alert.subject,
            details=dict(alert.details),
        )
        self._store.insert_incident(incident)
        self.incidents_created += 1
        logger.error("Incident %s opened for %s [%s]", incident.id, incident.type, severity)
        self._notify(incident)
        return incident

    def _recurred(self, alert: Alert) -> bool:
        key = f"alert:{alert.type}"
        self._recurrence.record(key)
        if self._recurrence.count_since(key, self._repeat_window) < self._repeat_threshold:
            return False
        self._recurrence.reset(key)
        return True

    def _record_alert(self, alert: Alert, severity: Severity) -> int | None:
        """Write the SECURITY_INCIDENT ledger entry; returns its id if stored."""
        if self._chain is None:
            return None
        try:
            entry = self._chain.record(
                EventType.SECURITY_INCIDENT,
                str(alert.type),
                metadata={
                    "alert_type": str(alert.type),
                    "severity": str(severity),
                    "subject": alert.subject,
                    "triggering_entry": alert.audit_entry_id,
                    "details": alert.details,
                },
            )
        except StorageError as exc:
            logger.error("Could not record security incident for %s: %s", alert.type, exc)
            return None
        return entry.id if entry else None

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _notify(self, incident: Incident) -> None:
        if self._executor is None:
            self._deliver(incident)
        else:
            self._executor.submit(self._deliver, incident)

    def _deliver(self, incident: Incident) -> None:
        try:
            self._notifier.notify(incident)
        except Exception as exc:  # noqa: BLE001
            logger.error("Notification for incident %s failed: %s", incident.id, exc)

    # ------------------------------------------------------------------
    # Incident management
    # ------------------------------------------------------------------

    def update_status(self, incident_id: str, status: IncidentStatus) -> bool:
        updated = self._store.update_incident_status(incident_id, status, self._clock.now())
        if updated:
            logger.info("Incident %s moved to %s", incident_id, status)
        return updated

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._notifier.close()
