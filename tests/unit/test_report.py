"""Unit tests for vigil.core.audit.report — compliance report generation."""

from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path

import pytest

from vigil.core.alerts.dispatcher import AlertDispatcher
from vigil.core.alerts.models import Alert, AlertType, Incident, IncidentStatus, Severity
from vigil.core.audit.ledger import IntegrityChain
from vigil.core.audit.models import AccessResult, Actor, EventType, Resource
from vigil.core.audit.report import generate_report
from vigil.core.clock import ManualClock
from vigil.core.store.database import Database


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    d = Database(tmp_path / "report_test.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def chain(db: Database, clock: ManualClock) -> IntegrityChain:
    c = IntegrityChain(db, clock=clock)
    c.initialize()
    return c


def _seed(chain: IntegrityChain) -> None:
    chain.record(EventType.LOGIN_SUCCESS, "login", actor=Actor("alice"))
    chain.record(EventType.RECORD_ACCESS, "view", actor=Actor("alice"))
    for _ in range(2):
        chain.record(
            EventType.LOGIN_FAILED, "login", actor=Actor("mallory"), result=AccessResult.FAILED
        )


class TestGenerateReport:
    def test_summary(self, db: Database, chain: IntegrityChain) -> None:
        _seed(chain)
        report = generate_report(chain, db, requested_by="auditor")
        assert report.ok
        assert report.total_events == 4
        assert report.denied_events == 2
        assert report.integrity.checked == 4
        by_type = {s.event_type: s for s in report.by_event_type}
        assert by_type["LOGIN_FAILED"].count == 2
        assert by_type["LOGIN_FAILED"].unique_actors == 1
        assert report.top_offenders[0]["actor_id"] == "mallory"

    def test_generation_is_audited(self, db: Database, chain: IntegrityChain) -> None:
        _seed(chain)
        generate_report(chain, db, requested_by="auditor")
        (entry,) = db.get_recent_audit_entries(limit=1)
        assert entry.event_type is EventType.AUDIT_REPORT_GENERATED
        assert entry.metadata["requested_by"] == "auditor"
        assert entry.metadata["total_events"] == 4
        assert entry.metadata["integrity_ok"] is True

    def test_period(self, db: Database, chain: IntegrityChain, clock: ManualClock) -> None:
        _seed(chain)
        clock.advance(days=1)
        start = clock.now()
        chain.record(EventType.RECORD_EXPORT, "export", actor=Actor("bob"))
        now = clock.now()
        db.insert_incident(
            Incident(
                id=str(uuid.uuid4()),
                type="EXCESSIVE_DATA_EXPORT",
                severity=Severity.HIGH,
                status=IncidentStatus.OPEN,
                created_at=now,
                updated_at=now,
            )
        )
        report = generate_report(chain, db, start=start, end=clock.now())
        assert report.total_events == 1
        assert report.integrity.checked == 1
        assert len(report.incidents) == 1
        assert report.to_dict()["start"] == start.isoformat()

    def test_tampering_shows_in_report(self, db: Database, chain: IntegrityChain) -> None:
        _seed(chain)
        raw = sqlite3.connect(str(db.path))
        try:
            raw.execute("UPDATE audit_log SET action = 'edited' WHERE id = 2")
            raw.commit()
        finally:
            raw.close()
        report = generate_report(chain, db)
        assert not report.ok
        assert report.integrity.violations[0].entry_id == 2
        assert report.to_dict()["integrity"]["ok"] is False

    def test_empty_ledger(self, db: Database, chain: IntegrityChain) -> None:
        report = generate_report(chain, db)
        assert report.ok
        assert report.total_events == 0
        assert report.by_event_type == ()

    def test_monitor_entries_are_not_offenders(
        self, db: Database, chain: IntegrityChain, clock: ManualClock
    ) -> None:
        chain.record(EventType.RECORD_ACCESS, "view", actor=Actor("alice"))
        chain.record(EventType.RECORD_ACCESS, "view", actor=Actor("alice"))
        chain.record(
            EventType.INTEGRITY_VIOLATION,
            "verify_chain",
            resource=Resource(type="audit_log", id="2"),
            result=AccessResult.FAILED,
            metadata={"chain_id": chain.chain_id},
        )
        dispatcher = AlertDispatcher(db, chain=chain, clock=clock, notify_in_background=False)
        try:
            for subject in (chain.chain_id, "10.0.0.9", "alice"):
                dispatcher.dispatch(
                    Alert(
                        type=AlertType.BRUTE_FORCE_DETECTED,
                        severity=Severity.CRITICAL,
                        timestamp=clock.now(),
                        subject=subject,
                    )
                )
        finally:
            dispatcher.close()

        report = generate_report(chain, db)
        assert report.denied_events == 0
        assert report.top_offenders == ()
        by_type = {s.event_type: s for s in report.by_event_type}
        assert by_type["SECURITY_INCIDENT"].count == 3
        assert by_type["SECURITY_INCIDENT"].denied == 0
