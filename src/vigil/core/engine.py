"""
SecurityEngine — the surface the request-handling layer talks to.

Wires one instance of each component together and exposes the ingest,
session, query and credential operations:

  record_action / inspect_request               ingest
  authenticate / fail_authentication            session start
  authorize / logout                            per-request session checks
  verify_integrity / generate_report            query
  change_password / run_compliance_scan         credentials and compliance

Construct it once per process (``SecurityEngine.from_config``) and pass
it by reference.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from vigil.core.alerts.dispatcher import AlertDispatcher, classify
from vigil.core.alerts.models import Alert, AlertType
from vigil.core.alerts.notify import (
    LoggingNotifier,
    MultiNotifier,
    NotificationPort,
    WebhookNotifier,
)
from vigil.core.audit.fallback import FallbackSink
from vigil.core.audit.ledger import IntegrityChain, VerificationReport
from vigil.core.audit.models import (
    AccessResult,
    Actor,
    AuditEntry,
    Classification,
    ClientContext,
    EventType,
    Resource,
)
from vigil.core.audit.report import AuditReport, generate_report
from vigil.core.clock import Clock, SystemClock
from vigil.core.config import VigilConfig
from vigil.core.credentials.breach import (
    BreachCheckPort,
    DisabledBreachCheck,
    PwnedPasswordsClient,
)
from vigil.core.credentials.models import PolicyDecision
from vigil.core.credentials.policy import CredentialPolicyEngine
from vigil.core.exceptions import AccountLocked, PasswordExpired
from vigil.core.monitor.detector import ThreatDetector
from vigil.core.monitor.metrics import MetricsCollector
from vigil.core.monitor.signatures import default_signatures, load_signatures
from vigil.core.session.models import EndReason, IssuedSession, Session
from vigil.core.session.registry import SessionRegistry
from vigil.core.store.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    id: str
    display_name: str | None = None

    @property
    def actor(self) -> Actor:
        return Actor(principal_id=self.id, display_name=self.display_name)


@dataclass(frozen=True)
class Authorization:
    principal_id: str
    session: Session
    warning: bool
    remaining: timedelta


def build_notifier(config: VigilConfig) -> NotificationPort:
    notifiers: list[NotificationPort] = [LoggingNotifier()]
    if config.alerts.webhook_url:
        cfg = config.alerts
        notifiers.append(WebhookNotifier(cfg.webhook_url, timeout=cfg.webhook_timeout_seconds))
    return notifiers[0] if len(notifiers) == 1 else MultiNotifier(notifiers)


def build_breach_check(config: VigilConfig) -> BreachCheckPort:
    cfg = config.credentials
    if not cfg.breach_check_enabled:
        return DisabledBreachCheck()
    return PwnedPasswordsClient(cfg.breach_api_url, timeout=cfg.breach_timeout_seconds)


class SecurityEngine:
    def __init__(
        self,
        db: Database,
        chain: IntegrityChain,
        detector: ThreatDetector,
        dispatcher: AlertDispatcher,
        sessions: SessionRegistry,
        credentials: CredentialPolicyEngine,
        *,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.db = db
        self.chain = chain
        self.detector = detector
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.credentials = credentials
        self.clock = clock or SystemClock()
        self.metrics = metrics or MetricsCollector(db, clock=self.clock)

        detector.add_sink(dispatcher.dispatch)
        credentials.add_sink(dispatcher.dispatch)
        chain.subscribe(detector.observe)

    @classmethod
    def from_config(
        cls,
        config: VigilConfig,
        *,
        clock: Clock | None = None,
        notifier: NotificationPort | None = None,
        breach: BreachCheckPort | None = None,
        db: Database | None = None,
    ) -> SecurityEngine:
        """Open the database and construct every component from *config*."""
        clock = clock or SystemClock()
        if db is None:
            db = Database(config.db_path, timeout=config.audit.write_timeout_seconds)
        if not db.connected:
            db.connect()

        chain = IntegrityChain(
            db,
            fallback=FallbackSink(config.fallback_path),
            clock=clock,
            write_timeout=config.audit.write_timeout_seconds,
            retry_attempts=config.audit.retry_attempts,
            synchronous_actions=config.audit.synchronous_actions,
        )
        chain.initialize()

        det_cfg = config.detection
        signatures = (
            load_signatures(det_cfg.signatures_path)
            if det_cfg.signatures_path
            else default_signatures()
        )
        detector = ThreatDetector(clock=clock, config=det_cfg, signatures=signatures)
        dispatcher = AlertDispatcher(
            db,
            notifier or build_notifier(config),
            chain=chain,
            clock=clock,
            repeat_threshold=config.alerts.repeat_threshold,
            repeat_window=timedelta(hours=config.alerts.repeat_window_hours),
            notify_in_background=config.alerts.notify_in_background,
        )
        sessions = SessionRegistry(db, chain=chain, clock=clock, config=config.sessions)
        credentials = CredentialPolicyEngine(
            db,
            chain=chain,
            clock=clock,
            config=config.credentials,
            breach=breach or build_breach_check(config),
        )
        metrics = MetricsCollector(
            db,
            clock=clock,
            interval=timedelta(seconds=config.scheduler.metrics_interval_seconds),
        )
        logger.info("Security engine ready (db=%s, chain head=%s)", db.path, chain.head)
        return cls(
            db,
            chain,
            detector,
            dispatcher,
            sessions,
            credentials,
            clock=clock,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def record_action(
        self,
        event_type: EventType,
        action: str,
        *,
        actor: Actor | None = None,
        resource: Resource | None = None,
        classification: Classification | None = None,
        result: AccessResult = AccessResult.GRANTED,
        client: ClientContext | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEntry | None:
        """
        Audit one action. Returns None when the entry was spooled.

        Raises:
            TransientStorageFailure: only for compliance-critical actions.
        """
        return self.chain.record(
            event_type,
            action,
            actor=actor,
            resource=resource,
            classification=classification,
            result=result,
            client=client,
            metadata=metadata,
        )

    def inspect_request(
        self,
        actor: Actor | None,
        client: ClientContext,
        query: Mapping[str, Any] | None = None,
        body: str | Mapping[str, Any] | None = None,
    ) -> list[Alert]:
        """Scan an inbound request for injection signatures; matches are denied and audited."""
        actor = actor or Actor()
        alert = self.detector.scan_request(
            client.path, query, body, subject=actor.principal_id or client.ip_address
        )
        if alert is None:
            return []
        entry = self.chain.record(
            EventType.INJECTION_ATTEMPT,
            "request_blocked",
            actor=actor,
            resource=Resource(type="request", id=client.path[:256]),
            result=AccessResult.DENIED,
            client=client,
            metadata={"signatures": alert.details["signatures"]},
        )
        if entry is not None:
            alert = replace(alert, audit_entry_id=entry.id)
        self.detector.emit(alert)
        return [alert]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def authenticate(
        self, principal: Principal | str, client: ClientContext | None = None
    ) -> IssuedSession:
        """
        Open a session for a principal whose credentials were already checked.

        Raises:
            AccountLocked: the account is inside a lockout period.
            PasswordExpired: the password must be changed first.
        """
        if isinstance(principal, str):
            principal = Principal(principal)
        client = client or ClientContext()
        try:
            self.credentials.require_login_allowed(principal.id)
        except (AccountLocked, PasswordExpired) as exc:
            self.chain.record(
                EventType.LOGIN_FAILED,
                "login",
                actor=principal.actor,
                result=AccessResult.DENIED,
                client=client,
                metadata={"reason": exc.reasons[0]},
            )
            raise

        issued = self.sessions.create(principal.id, client)
        self.credentials.record_successful_login(principal.id)
        self.chain.record(
            EventType.LOGIN_SUCCESS,
            "login",
            actor=principal.actor,
            resource=Resource(type="session", id=issued.session.id),
            client=client,
            metadata={"session_id": issued.session.id},
        )
        return issued

    def fail_authentication(
        self,
        principal_id: str | None,
        username: str = "",
        client: ClientContext | None = None,
    ) -> None:
        """Audit a failed login; known principals also count toward lockout."""
        self.chain.record(
            EventType.LOGIN_FAILED,
            "login",
            actor=Actor(principal_id=principal_id, display_name=username or None),
            result=AccessResult.FAILED,
            client=client,
            metadata={"username": username} if username else None,
        )
        if principal_id:
            self.credentials.record_failed_attempt(principal_id)

    def authorize(self, token: str, client: ClientContext | None = None) -> Authorization:
        """
        Raises:
            SessionExpired / SessionEvicted / SessionNotFound: re-authenticate.
        """
        touched = self.sessions.touch_token(token, client)
        return Authorization(
            principal_id=touched.session.principal_id,
            session=touched.session,
            warning=touched.warning,
            remaining=touched.remaining,
        )

    def logout(self, token: str, client: ClientContext | None = None) -> bool:
        session = self.sessions.resolve_token(token)
        if session is None or not self.sessions.invalidate(session.id, EndReason.LOGOUT):
            return False
        self.chain.record(
            EventType.LOGOUT,
            "logout",
            actor=Actor(principal_id=session.principal_id),
            resource=Resource(type="session", id=session.id),
            client=client,
        )
        return True

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def verify_integrity(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        exhaustive: bool = False,
    ) -> VerificationReport:
        """Verify the chain over a period; any violation opens a critical incident."""
        report = self.chain.verify_range(start, end, exhaustive=exhaustive)
        if not report.ok:
            self._escalate_violation(report)
        return report

    def _escalate_violation(self, report: VerificationReport) -> None:
        first = report.violations[0]
        entry = self.chain.record(
            EventType.INTEGRITY_VIOLATION,
            "verify_chain",
            resource=Resource(type="audit_log", id=str(first.entry_id)),
            result=AccessResult.FAILED,
            metadata={
                "chain_id": report.chain_id,
                "violations": len(report.violations),
                "first_violation": first.to_dict(),
            },
        )
        self.dispatcher.dispatch(
            Alert(
                type=AlertType.INTEGRITY_VIOLATION_DETECTED,
                severity=classify(AlertType.INTEGRITY_VIOLATION_DETECTED),
                timestamp=self.clock.now(),
                subject=report.chain_id,
                details={
                    "first_entry_id": first.entry_id,
                    "kind": str(first.kind),
                    "violations": len(report.violations),
                },
                audit_entry_id=entry.id if entry else None,
            )
        )

    def generate_report(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        requested_by: str | None = None,
    ) -> AuditReport:
        report = generate_report(self.chain, self.db, start, end, requested_by=requested_by)
        if not report.integrity.ok:
            self._escalate_violation(report.integrity)
        return report

    # ------------------------------------------------------------------
    # Credentials / compliance
    # ------------------------------------------------------------------

    def change_password(self, principal_id: str, password: str) -> PolicyDecision:
        """
        Raises:
            PolicyRejected: with every unmet rule.
        """
        return self.credentials.change_password(principal_id, password)

    def run_compliance_scan(self, window: timedelta = timedelta(hours=24)) -> dict[str, Any]:
        """Verify the recent chain and look for overdue passwords."""
        now = self.clock.now()
        integrity = self.verify_integrity(now - window, now)
        overdue = self.credentials.overdue_credentials(now)
        if overdue:
            self.dispatcher.dispatch(
                Alert(
                    type=AlertType.COMPLIANCE_VIOLATIONS_DETECTED,
                    severity=classify(AlertType.COMPLIANCE_VIOLATIONS_DETECTED),
                    timestamp=now,
                    details={
                        "overdue_passwords": len(overdue),
                        "principals": [r.principal_id for r in overdue[:50]],
                    },
                )
            )
        result = {
            "integrity_ok": integrity.ok,
            "entries_checked": integrity.checked,
            "overdue_passwords": len(overdue),
        }
        logger.info("Compliance scan: %s", result)
        return result

    def close(self) -> None:
        self.dispatcher.close()
        self.db.close()
