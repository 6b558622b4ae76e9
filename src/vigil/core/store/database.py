"""
SQLite persistence for the audit ledger, sessions, incidents, credentials
and security metrics.

One connection per process (``check_same_thread=False``) guarded by an
``RLock``; WAL journaling with a busy timeout equal to the ledger write
timeout. All timestamps are stored as canonical UTC ISO-8601 text, so
lexical comparison matches chronological order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from vigil.core.alerts.models import Incident, IncidentStatus, Severity
from vigil.core.audit.models import (
    AccessResult,
    AuditEntry,
    Classification,
    EventType,
    format_timestamp,
    parse_timestamp,
)
from vigil.core.constants import LEDGER_WRITE_TIMEOUT_SECONDS
from vigil.core.credentials.models import CredentialRecord
from vigil.core.exceptions import StorageError, TransientStorageFailure
from vigil.core.session.models import STATE_FOR_REASON, EndReason, Session, SessionState
from vigil.core.store.migrations import run_migrations
from vigil.core.store.ports import (
    CredentialStore,
    IncidentStore,
    LedgerStore,
    MetricsStore,
    SessionStore,
)

logger = logging.getLogger(__name__)

_BATCH = 500

# Entries the engine writes about itself; never counted as denied principal activity.
_MONITOR_EVENTS = (EventType.SECURITY_INCIDENT.value, EventType.INTEGRITY_VIOLATION.value)
_PRINCIPAL_DENIED = (
    "access_result != 'granted' AND event_type NOT IN ("
    + ", ".join(f"'{t}'" for t in _MONITOR_EVENTS)
    + ")"
)


def _ts(dt: datetime | None) -> str | None:
    return format_timestamp(dt) if dt is not None else None


def _dt(text: str | None) -> datetime | None:
    return parse_timestamp(text) if text else None


class Database(LedgerStore, SessionStore, IncidentStore, CredentialStore, MetricsStore):
    """
    SQLite-backed store.

    Usage::

        db = Database(path)
        db.connect()
        ...
        db.close()
    """

    def __init__(self, path: Path, *, timeout: float = LEDGER_WRITE_TIMEOUT_SECONDS) -> None:
        self.path = path
        self._timeout = timeout
        self._db: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        # Migrations manage their own transactions
        conn.isolation_level = ""
        run_migrations(conn)
        self._db = conn
        logger.debug("Database connected: %s", self.path)

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    @contextmanager
    def _conn(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield the connection under the lock, translating sqlite errors."""
        with self._lock:
            if self._db is None:
                raise StorageError(f"database {self.path} is not connected")
            try:
                yield self._db
                if write:
                    self._db.commit()
            except sqlite3.OperationalError as exc:
                if write:
                    self._db.rollback()
                if "locked" in str(exc) or "busy" in str(exc):
                    raise TransientStorageFailure(str(exc)) from exc
                raise StorageError(str(exc)) from exc
            except sqlite3.Error as exc:
                if write:
                    self._db.rollback()
                raise StorageError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Audit ledger
    # ------------------------------------------------------------------

    def insert_audit_entry(self, entry: AuditEntry) -> int:
        with self._conn(write=True) as db:
            cur = db.execute(
                """
                INSERT INTO audit_log (
                    chain_id, event_type, action, timestamp, actor_id, actor_name,
                    resource_type, resource_id, classification, access_result,
                    ip_address, user_agent, request_method, request_path,
                    response_code, metadata, previous_hash, integrity_hash
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.chain_id,
                    str(entry.event_type),
                    entry.action,
                    format_timestamp(entry.timestamp),
                    entry.actor_id,
                    entry.actor_name,
                    entry.resource_type,
                    entry.resource_id,
                    str(entry.classification),
                    str(entry.access_result),
                    entry.ip_address,
                    entry.user_agent,
                    entry.request_method,
                    entry.request_path,
                    entry.response_code,
                    json.dumps(entry.metadata, sort_keys=True),
                    entry.previous_hash,
                    entry.integrity_hash,
                ),
            )
            return int(cur.lastrowid)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            chain_id=row["chain_id"],
            event_type=EventType(row["event_type"]),
            action=row["action"],
            timestamp=parse_timestamp(row["timestamp"]),
            actor_id=row["actor_id"],
            actor_name=row["actor_name"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            classification=Classification(row["classification"]),
            access_result=AccessResult(row["access_result"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            request_method=row["request_method"],
            request_path=row["request_path"],
            response_code=row["response_code"],
            metadata=json.loads(row["metadata"]),
            previous_hash=row["previous_hash"],
            integrity_hash=row["integrity_hash"],
        )

    def last_audit_entry(self, chain_id: str) -> AuditEntry | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM audit_log WHERE chain_id = ? ORDER BY id DESC LIMIT 1",
                (chain_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def audit_entry_before(self, chain_id: str, entry_id: int) -> AuditEntry | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM audit_log WHERE chain_id = ? AND id < ? ORDER BY id DESC LIMIT 1",
                (chain_id, entry_id),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_audit_entry(self, entry_id: int) -> AuditEntry | None:
        with self._conn() as db:
            row = db.execute("SELECT * FROM audit_log WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def audit_id_bounds(
        self,
        chain_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[int, int] | None:
        with self._conn() as db:
            if start is None:
                lo = db.execute(
                    "SELECT min(id) FROM audit_log WHERE chain_id = ?", (chain_id,)
                ).fetchone()[0]
            else:
                lo = db.execute(
                    "SELECT min(id) FROM audit_log WHERE chain_id = ? AND timestamp >= ?",
                    (chain_id, format_timestamp(start)),
                ).fetchone()[0]
            if end is None:
                hi = db.execute(
                    "SELECT max(id) FROM audit_log WHERE chain_id = ?", (chain_id,)
                ).fetchone()[0]
            else:
                hi = db.execute(
                    "SELECT max(id) FROM audit_log WHERE chain_id = ? AND timestamp <= ?",
                    (chain_id, format_timestamp(end)),
                ).fetchone()[0]
        if lo is None or hi is None or lo > hi:
            return None
        return int(lo), int(hi)

    def iter_audit_entries(
        self,
        chain_id: str,
        from_id: int | None = None,
        to_id: int | None = None,
    ) -> Iterator[AuditEntry]:
        """Yield entries in id order, fetched in batches so the lock is not held across yields."""
        last_id = (from_id - 1) if from_id is not None else 0
        upper = to_id if to_id is not None else -1
        while True:
            with self._conn() as db:
                rows = db.execute(
                    "SELECT * FROM audit_log WHERE chain_id = ? AND id > ? "
                    "AND (? < 0 OR id <= ?) ORDER BY id LIMIT ?",
                    (chain_id, last_id, upper, upper, _BATCH),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_entry(row)
            last_id = rows[-1]["id"]

    def get_recent_audit_entries(self, limit: int = 50) -> list[AuditEntry]:
        """Newest first, across all chains."""
        with self._conn() as db:
            rows = db.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count_audit_entries(
        self, since: datetime | None = None, event_types: Iterable[str] | None = None
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(format_timestamp(since))
        if event_types is not None:
            types = [str(t) for t in event_types]
            if not types:
                return 0
            clauses.append(f"event_type IN ({', '.join('?' * len(types))})")
            params.extend(types)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as db:
            sql = f"SELECT count(*) FROM audit_log{where}"  # noqa: S608
            row = db.execute(sql, params).fetchone()
        return int(row[0])

    @staticmethod
    def _period(start: datetime | None, end: datetime | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(format_timestamp(start))
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(format_timestamp(end))
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def audit_summary(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Per event type: entry count, distinct actors, denied/failed principal count."""
        where, params = self._period(start, end)
        sql = (
            "SELECT event_type, count(*) AS count, count(DISTINCT actor_id) AS unique_actors, "
            f"sum(CASE WHEN {_PRINCIPAL_DENIED} THEN 1 ELSE 0 END) AS denied "
            f"FROM audit_log{where} GROUP BY event_type ORDER BY count DESC, event_type"
        )
        with self._conn() as db:
            rows = db.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def top_offenders(
        self, start: datetime | None = None, end: datetime | None = None, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Principals with the most denied or failed entries in the period."""
        where, params = self._period(start, end)
        extra = f"{_PRINCIPAL_DENIED} AND actor_id IS NOT NULL"
        where = f"{where} AND {extra}" if where else f" WHERE {extra}"
        sql = (
            "SELECT actor_id, count(*) AS failures, max(timestamp) AS last_seen "
            f"FROM audit_log{where} GROUP BY actor_id ORDER BY failures DESC, actor_id LIMIT ?"
        )
        with self._conn() as db:
            rows = db.execute(sql, [*params, limit]).fetchall()
        return [dict(r) for r in rows]

    def list_chain_ids(self) -> list[str]:
        with self._conn() as db:
            rows = db.execute(
                "SELECT DISTINCT chain_id FROM audit_log ORDER BY chain_id"
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        with self._conn(write=True) as db:
            db.execute(
                """
                INSERT INTO sessions (
                    id, principal_id, token_ref, created_at, last_activity,
                    expires_at, absolute_expires_at, ip_address, user_agent,
                    active, state
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    session.id,
                    session.principal_id,
                    session.token_ref,
                    _ts(session.created_at),
                    _ts(session.last_activity),
                    _ts(session.expires_at),
                    _ts(session.absolute_expires_at),
                    session.ip_address,
                    session.user_agent,
                    str(session.state),
                ),
            )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            principal_id=row["principal_id"],
            token_ref=row["token_ref"],
            created_at=parse_timestamp(row["created_at"]),
            last_activity=parse_timestamp(row["last_activity"]),
            expires_at=parse_timestamp(row["expires_at"]),
            absolute_expires_at=parse_timestamp(row["absolute_expires_at"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            state=SessionState(row["state"]),
            ended_at=_dt(row["ended_at"]),
            end_reason=row["end_reason"],
        )

    def get_session(self, session_id: str) -> Session | None:
        with self._conn() as db:
            row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token(self, token_ref: str) -> Session | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM sessions WHERE token_ref = ?", (token_ref,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_active_sessions(self, principal_id: str | None = None) -> list[Session]:
        with self._conn() as db:
            if principal_id is None:
                rows = db.execute(
                    "SELECT * FROM sessions WHERE active = 1 ORDER BY last_activity"
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM sessions WHERE principal_id = ? AND active = 1 "
                    "ORDER BY last_activity",
                    (principal_id,),
                ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_sessions(self, limit: int = 100) -> list[Session]:
        with self._conn() as db:
            rows = db.execute(
                "SELECT * FROM sessions ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_expired_sessions(self, now: datetime) -> list[Session]:
        stamp = format_timestamp(now)
        with self._conn() as db:
            rows = db.execute(
                "SELECT * FROM sessions WHERE active = 1 "
                "AND (expires_at <= ? OR absolute_expires_at <= ?) ORDER BY expires_at",
                (stamp, stamp),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime, **client: str
    ) -> bool:
        sets = ["last_activity = ?", "expires_at = ?"]
        params: list[Any] = [_ts(last_activity), _ts(expires_at)]
        for column in ("ip_address", "user_agent"):
            if client.get(column):
                sets.append(f"{column} = ?")
                params.append(client[column])
        params.append(session_id)
        with self._conn(write=True) as db:
            cur = db.execute(
                f"UPDATE sessions SET {', '.join(sets)} WHERE id = ? AND active = 1",  # noqa: S608
                params,
            )
            return cur.rowcount == 1

    def end_session(self, session_id: str, reason: EndReason, ended_at: datetime) -> bool:
        state = STATE_FOR_REASON.get(reason, SessionState.LOGGED_OUT)
        with self._conn(write=True) as db:
            cur = db.execute(
                "UPDATE sessions SET active = 0, state = ?, ended_at = ?, end_reason = ? "
                "WHERE id = ? AND active = 1",
                (str(state), _ts(ended_at), str(reason), session_id),
            )
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def insert_incident(self, incident: Incident) -> None:
        with self._conn(write=True) as db:
            db.execute(
                """
                INSERT INTO incidents (
                    id, incident_type, severity, status, audit_log_id, subject,
                    details, created_at, updated_at, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    incident.id,
                    str(incident.type),
                    str(incident.severity),
                    str(incident.status),
                    incident.audit_entry_id,
                    incident.subject,
                    json.dumps(incident.details, sort_keys=True, default=str),
                    _ts(incident.created_at),
                    _ts(incident.updated_at),
                    _ts(incident.resolved_at),
                ),
            )

    @staticmethod
    def _row_to_incident(row: sqlite3.Row) -> Incident:
        return Incident(
            id=row["id"],
            type=row["incident_type"],
            severity=Severity(row["severity"]),
            status=IncidentStatus(row["status"]),
            audit_entry_id=row["audit_log_id"],
            subject=row["subject"],
            details=json.loads(row["details"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            resolved_at=_dt(row["resolved_at"]),
        )

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._conn() as db:
            row = db.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
        return self._row_to_incident(row) if row else None

    def list_incidents(
        self,
        status: IncidentStatus | None = None,
        limit: int = 100,
    ) -> list[Incident]:
        with self._conn() as db:
            if status is None:
                rows = db.execute(
                    "SELECT * FROM incidents ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM incidents WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (str(status), limit),
                ).fetchall()
        return [self._row_to_incident(r) for r in rows]

    def update_incident_status(
        self, incident_id: str, status: IncidentStatus, at: datetime
    ) -> bool:
        resolved = _ts(at) if status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED) else None
        with self._conn(write=True) as db:
            cur = db.execute(
                "UPDATE incidents SET status = ?, updated_at = ?, "
                "resolved_at = COALESCE(resolved_at, ?) WHERE id = ?",
                (str(status), _ts(at), resolved, incident_id),
            )
            return cur.rowcount == 1

    def count_incidents(self, since: datetime | None = None) -> int:
        with self._conn() as db:
            if since is None:
                row = db.execute("SELECT count(*) FROM incidents").fetchone()
            else:
                row = db.execute(
                    "SELECT count(*) FROM incidents WHERE created_at >= ?", (_ts(since),)
                ).fetchone()
        return int(row[0])

    def count_open_incidents(self) -> int:
        with self._conn() as db:
            row = db.execute(
                "SELECT count(*) FROM incidents WHERE status IN ('open', 'investigating')"
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> CredentialRecord:
        return CredentialRecord(
            principal_id=row["principal_id"],
            failed_attempts=row["failed_attempts"],
            locked_until=_dt(row["locked_until"]),
            last_password_change=_dt(row["last_password_change"]),
            password_never_expires=bool(row["password_never_expires"]),
        )

    def get_credential(self, principal_id: str) -> CredentialRecord | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM credentials WHERE principal_id = ?", (principal_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def save_credential(self, record: CredentialRecord) -> None:
        with self._conn(write=True) as db:
            db.execute(
                """
                INSERT INTO credentials (
                    principal_id, failed_attempts, locked_until,
                    last_password_change, password_never_expires
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(principal_id) DO UPDATE SET
                    failed_attempts = excluded.failed_attempts,
                    locked_until = excluded.locked_until,
                    last_password_change = excluded.last_password_change,
                    password_never_expires = excluded.password_never_expires
                """,
                (
                    record.principal_id,
                    record.failed_attempts,
                    _ts(record.locked_until),
                    _ts(record.last_password_change),
                    int(record.password_never_expires),
                ),
            )

    def list_credentials(self) -> list[CredentialRecord]:
        with self._conn() as db:
            rows = db.execute("SELECT * FROM credentials ORDER BY principal_id").fetchall()
        return [self._row_to_credential(r) for r in rows]

    def password_history(self, principal_id: str, limit: int) -> list[str]:
        with self._conn() as db:
            rows = db.execute(
                "SELECT password_hash FROM password_history WHERE principal_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (principal_id, limit),
            ).fetchall()
        return [r[0] for r in rows]

    def add_password_history(
        self, principal_id: str, password_hash: str, created_at: datetime, keep: int
    ) -> None:
        with self._conn(write=True) as db:
            db.execute(
                "INSERT INTO password_history (principal_id, password_hash, created_at) "
                "VALUES (?, ?, ?)",
                (principal_id, password_hash, _ts(created_at)),
            )
            db.execute(
                """
                DELETE FROM password_history
                WHERE principal_id = ? AND id NOT IN (
                    SELECT id FROM password_history WHERE principal_id = ?
                    ORDER BY id DESC LIMIT ?
                )
                """,
                (principal_id, principal_id, keep),
            )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def insert_metrics(self, recorded_at: datetime, values: dict[str, Any]) -> None:
        with self._conn(write=True) as db:
            db.execute(
                """
                INSERT INTO security_metrics (
                    recorded_at, total_events, security_events, alerts,
                    incidents, open_incidents, system_health
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _ts(recorded_at),
                    values.get("total_events", 0),
                    values.get("security_events", 0),
                    values.get("alerts", 0),
                    values.get("incidents", 0),
                    values.get("open_incidents", 0),
                    values.get("system_health", "normal"),
                ),
            )

    def latest_metrics(self) -> dict[str, Any] | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM security_metrics ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return dict(row) if row else None

    def table_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._conn() as db:
            for table in (
                "audit_log",
                "sessions",
                "incidents",
                "credentials",
                "password_history",
                "security_metrics",
            ):
                row = db.execute(f"SELECT count(*) FROM {table}").fetchone()  # noqa: S608
                counts[table] = int(row[0])
        return counts
