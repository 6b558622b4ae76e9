"""
ThreatDetector — rule-based analysis of the audit stream.

Threshold rules (count within window, per key):

  failed_login:{principal|ip}     brute force
  admin_action:{principal}        excessive privileged activity
  export:{principal}              excessive data export
  session_timeout:all             mass session timeout
  restricted_access:{principal}   abnormal access to restricted records

A threshold rule fires once when its count reaches the threshold; further
events for the same key stay silent until a window has passed since the
firing, after which a fresh burst fires again.

Non-threshold rules: impossible travel between consecutive logins,
critical system changes, and injection signatures on inbound requests.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from vigil.core.alerts.dispatcher import classify
from vigil.core.alerts.models import Alert, AlertType
from vigil.core.audit.models import (
    ADMIN_EVENTS,
    EXPORT_EVENTS,
    AccessResult,
    AuditEntry,
    Classification,
    EventType,
    Location,
)
from vigil.core.clock import Clock, SystemClock
from vigil.core.config import DetectionConfig, ThresholdConfig
from vigil.core.monitor.signatures import Signature, default_signatures, scan
from vigil.core.monitor.travel import LoginSighting, TravelPolicy, is_impossible
from vigil.core.monitor.window import EventWindowTracker

logger = logging.getLogger(__name__)

AlertSink = Callable[[Alert], Any]

CRITICAL_ACTIONS: frozenset[str] = frozenset(
    {
        EventType.SYSTEM_CONFIG_CHANGED,
        EventType.USER_DELETED,
        EventType.ROLE_CHANGED,
        EventType.PERMISSION_GRANTED,
    }
)
CRITICAL_RESOURCES: frozenset[str] = frozenset(
    {"system_config", "security_settings", "encryption_keys"}
)

_FIRED = "fired"
_MAX_TRACKED_LOGINS = 10_000


class ThreatDetector:
    """
    Usage::

        detector = ThreatDetector(EventWindowTracker(clock), clock=clock)
        detector.add_sink(dispatcher.dispatch)
        chain.subscribe(detector.observe)
    """

    def __init__(
        self,
        tracker: EventWindowTracker | None = None,
        *,
        clock: Clock | None = None,
        config: DetectionConfig | None = None,
        signatures: Sequence[Signature] | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._config = config or DetectionConfig()
        self._tracker = tracker or self.build_tracker(self._config, self._clock)
        self._signatures = list(signatures) if signatures is not None else default_signatures()
        self._travel = TravelPolicy(
            max_speed_kmh=self._config.travel.max_speed_kmh,
            cross_country_window=timedelta(minutes=self._config.travel.cross_country_minutes),
        )
        self._fire_lock = threading.Lock()
        self._logins: OrderedDict[str, LoginSighting] = OrderedDict()
        self._logins_lock = threading.Lock()
        self._sinks: list[AlertSink] = []
        self.alerts_emitted = 0

    @staticmethod
    def build_tracker(config: DetectionConfig, clock: Clock) -> EventWindowTracker:
        """A tracker whose per-category retention covers every configured window."""
        rules = {
            "failed_login": config.brute_force,
            "admin_action": config.admin_action,
            "export": config.export,
            "session_timeout": config.session_timeout,
            "restricted_access": config.restricted_access,
        }
        retention = {name: rule.window for name, rule in rules.items()}
        retention[_FIRED] = max(retention.values())
        return EventWindowTracker(
            clock,
            retention=retention,
            max_events_per_key=config.tracker_max_events_per_key,
        )

    @property
    def tracker(self) -> EventWindowTracker:
        return self._tracker

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def emit(self, alert: Alert | None) -> Alert | None:
        if alert is None:
            return None
        self.alerts_emitted += 1
        for sink in list(self._sinks):
            try:
                sink(alert)
            except Exception:  # noqa: BLE001
                logger.exception("Alert sink %r failed for %s", sink, alert.type)
        return alert

    def _alert(
        self,
        alert_type: AlertType,
        subject: str,
        details: dict[str, Any],
        entry_id: int | None,
    ) -> Alert:
        return Alert(
            type=alert_type,
            severity=classify(alert_type),
            timestamp=self._clock.now(),
            subject=subject,
            details=details,
            audit_entry_id=entry_id,
        )

    # ------------------------------------------------------------------
    # Threshold rules
    # ------------------------------------------------------------------

    def _threshold(
        self,
        category: str,
        subjects: Sequence[str],
        rule: ThresholdConfig,
        alert_type: AlertType,
        *,
        at: datetime | None = None,
        entry_id: int | None = None,
        times: int = 1,
    ) -> Alert | None:
        """
        Record the event under every subject's key and fire at most one alert.

        All keys at/over threshold are marked fired together, so one burst
        seen under two keys (principal and IP) alerts once.
        """
        reached: list[tuple[str, int]] = []
        for subject in dict.fromkeys(s for s in subjects if s):
            key = f"{category}:{subject}"
            for _ in range(times):
                self._tracker.record(key, at)
            count = self._tracker.count_since(key, rule.window)
            if count >= rule.threshold:
                reached.append((subject, count))
        if not reached:
            return None

        with self._fire_lock:
            fresh = [
                (s, c)
                for s, c in reached
                if self._tracker.count_since(f"{_FIRED}:{category}:{s}", rule.window) == 0
            ]
            if not fresh:
                return None
            for subject, _ in reached:
                self._tracker.record(f"{_FIRED}:{category}:{subject}")

        subject, count = fresh[0]
        return self._alert(
            alert_type,
            subject,
            {
                "key": f"{category}:{subject}",
                "count": count,
                "threshold": rule.threshold,
                "window_seconds": rule.window_seconds,
            },
            entry_id,
        )

    def failed_login(
        self,
        principal_id: str | None,
        ip_address: str = "",
        *,
        at: datetime | None = None,
        entry_id: int | None = None,
    ) -> Alert | None:
        return self._threshold(
            "failed_login",
            [principal_id or "", ip_address],
            self._config.brute_force,
            AlertType.BRUTE_FORCE_DETECTED,
            at=at,
            entry_id=entry_id,
        )

    def admin_action(
        self, principal_id: str, *, at: datetime | None = None, entry_id: int | None = None
    ) -> Alert | None:
        return self._threshold(
            "admin_action",
            [principal_id],
            self._config.admin_action,
            AlertType.EXCESSIVE_ADMIN_ACTIVITY,
            at=at,
            entry_id=entry_id,
        )

    def data_export(
        self, principal_id: str, *, at: datetime | None = None, entry_id: int | None = None
    ) -> Alert | None:
        return self._threshold(
            "export",
            [principal_id],
            self._config.export,
            AlertType.EXCESSIVE_DATA_EXPORT,
            at=at,
            entry_id=entry_id,
        )

    def session_timeout(
        self, count: int = 1, *, at: datetime | None = None, entry_id: int | None = None
    ) -> Alert | None:
        return self._threshold(
            "session_timeout",
            ["all"],
            self._config.session_timeout,
            AlertType.MASS_SESSION_TIMEOUT,
            at=at,
            entry_id=entry_id,
            times=max(1, count),
        )

    def restricted_access(
        self, principal_id: str, *, at: datetime | None = None, entry_id: int | None = None
    ) -> Alert | None:
        return self._threshold(
            "restricted_access",
            [principal_id],
            self._config.restricted_access,
            AlertType.ABNORMAL_ACCESS_PATTERN,
            at=at,
            entry_id=entry_id,
        )

    # ------------------------------------------------------------------
    # Immediate rules
    # ------------------------------------------------------------------

    def critical_change(
        self,
        principal_id: str,
        action: str,
        resource_type: str = "",
        *,
        entry_id: int | None = None,
    ) -> Alert | None:
        if action not in CRITICAL_ACTIONS and resource_type not in CRITICAL_RESOURCES:
            return None
        return self._alert(
            AlertType.CRITICAL_SYSTEM_CHANGE,
            principal_id,
            {"action": action, "resource_type": resource_type},
            entry_id,
        )

    def login_success(
        self,
        principal_id: str,
        location: Location | None,
        *,
        at: datetime | None = None,
        entry_id: int | None = None,
    ) -> Alert | None:
        """Compare with the principal's previous login; remembers this one."""
        if location is None:
            return None
        current = LoginSighting(location, at or self._clock.now())
        with self._logins_lock:
            previous = self._logins.pop(principal_id, None)
            if previous is not None and previous.at > current.at:
                # Out-of-order report; keep the newer sighting
                self._logins[principal_id] = previous
                return None
            self._logins[principal_id] = current
            while len(self._logins) > _MAX_TRACKED_LOGINS:
                self._logins.popitem(last=False)
        if previous is None:
            return None
        impossible, details = is_impossible(previous, current, self._travel)
        if not impossible:
            return None
        return self._alert(AlertType.IMPOSSIBLE_TRAVEL_DETECTED, principal_id, details, entry_id)

    def scan_request(
        self,
        path: str = "",
        query: Mapping[str, Any] | None = None,
        body: str | Mapping[str, Any] | None = None,
        *,
        subject: str = "",
    ) -> Alert | None:
        """Match inbound request fields against the injection signatures."""
        texts = [path, *_flatten(query or {})]
        if isinstance(body, Mapping):
            texts.extend(_flatten(body))
        elif body:
            texts.append(body)
        matched = scan(self._signatures, texts)
        if not matched:
            return None
        return self._alert(
            AlertType.INJECTION_ATTEMPT_DETECTED,
            subject,
            {"signatures": matched, "path": path[:256]},
            None,
        )

    # ------------------------------------------------------------------
    # Ledger subscriber
    # ------------------------------------------------------------------

    def observe(self, entry: AuditEntry) -> list[Alert]:
        """Run every rule that applies to *entry* and emit the resulting alerts."""
        principal = entry.actor_id or ""
        at, eid = entry.timestamp, entry.id
        found: list[Alert | None] = []

        if entry.event_type is EventType.LOGIN_FAILED:
            subject = principal or str(entry.metadata.get("username") or "")
            found.append(self.failed_login(subject, entry.ip_address, at=at, entry_id=eid))
        elif entry.event_type is EventType.LOGIN_SUCCESS and principal:
            found.append(self.login_success(principal, entry.location, at=at, entry_id=eid))
        elif entry.event_type is EventType.SESSION_TIMEOUT:
            found.append(self.session_timeout(at=at, entry_id=eid))
        elif entry.event_type is EventType.SESSION_SWEEP_SUMMARY:
            count = int(entry.metadata.get("count") or 0)
            found.append(self.session_timeout(count, at=at, entry_id=eid))

        if entry.event_type in ADMIN_EVENTS and principal:
            found.append(self.admin_action(principal, at=at, entry_id=eid))
        if entry.event_type in ADMIN_EVENTS or entry.resource_type in CRITICAL_RESOURCES:
            found.append(
                self.critical_change(
                    principal, str(entry.event_type), entry.resource_type, entry_id=eid
                )
            )
        if entry.event_type in EXPORT_EVENTS and principal:
            found.append(self.data_export(principal, at=at, entry_id=eid))
        if (
            entry.classification is Classification.RESTRICTED
            and entry.access_result is AccessResult.GRANTED
            and principal
        ):
            found.append(self.restricted_access(principal, at=at, entry_id=eid))

        return [a for a in (self.emit(f) for f in found) if a is not None]

    def sweep(self) -> int:
        return self._tracker.sweep()


def _flatten(data: Mapping[str, Any], depth: int = 0) -> list[str]:
    out: list[str] = []
    for value in data.values():
        if isinstance(value, Mapping) and depth < 3:
            out.extend(_flatten(value, depth + 1))
        elif isinstance(value, list | tuple):
            out.extend(str(v) for v in value)
        elif value is not None:
            out.append(str(value))
    return out
