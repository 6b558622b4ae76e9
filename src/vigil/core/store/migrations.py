"""
Schema migrations, tracked with ``PRAGMA user_version``.

Each migration moves the schema from version N to N+1 and must be
idempotent (``IF NOT EXISTS``), so a database left half-migrated by a
crash can simply be migrated again.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)


def get_user_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def _set_user_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {int(version)}")


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


# ---------------------------------------------------------------------------
# v0 → v1: core tables
# ---------------------------------------------------------------------------

_V1_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    chain_id        TEXT NOT NULL DEFAULT 'main',
    event_type      TEXT NOT NULL,
    action          TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    actor_id        TEXT,
    actor_name      TEXT,
    resource_type   TEXT NOT NULL DEFAULT '',
    resource_id     TEXT NOT NULL DEFAULT '',
    classification  TEXT NOT NULL DEFAULT 'public',
    access_result   TEXT NOT NULL DEFAULT 'granted',
    ip_address      TEXT NOT NULL DEFAULT '',
    user_agent      TEXT NOT NULL DEFAULT '',
    request_method  TEXT NOT NULL DEFAULT '',
    request_path    TEXT NOT NULL DEFAULT '',
    response_code   INTEGER,
    metadata        TEXT NOT NULL DEFAULT '{}',
    previous_hash   TEXT NOT NULL,
    integrity_hash  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_chain ON audit_log (chain_id, id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log (actor_id);

CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    principal_id        TEXT NOT NULL,
    token_ref           TEXT NOT NULL UNIQUE,
    created_at          TEXT NOT NULL,
    last_activity       TEXT NOT NULL,
    expires_at          TEXT NOT NULL,
    absolute_expires_at TEXT NOT NULL,
    ip_address          TEXT NOT NULL DEFAULT '',
    user_agent          TEXT NOT NULL DEFAULT '',
    active              INTEGER NOT NULL DEFAULT 1,
    state               TEXT NOT NULL DEFAULT 'active',
    ended_at            TEXT,
    end_reason          TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_sessions_principal ON sessions (principal_id, active);
CREATE INDEX IF NOT EXISTS idx_sessions_expiry ON sessions (active, expires_at);

CREATE TABLE IF NOT EXISTS incidents (
    id              TEXT PRIMARY KEY,
    incident_type   TEXT NOT NULL,
    severity        TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'open',
    audit_log_id    INTEGER REFERENCES audit_log(id),
    subject         TEXT NOT NULL DEFAULT '',
    details         TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    resolved_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents (status, severity);
"""


def _migrate_0_to_1(conn: sqlite3.Connection) -> None:
    conn.executescript(_V1_SCHEMA)


# ---------------------------------------------------------------------------
# v1 → v2: credentials, password history, metrics
# ---------------------------------------------------------------------------

_V2_SCHEMA = """
CREATE TABLE IF NOT EXISTS credentials (
    principal_id            TEXT PRIMARY KEY,
    failed_attempts         INTEGER NOT NULL DEFAULT 0,
    locked_until            TEXT,
    last_password_change    TEXT,
    password_never_expires  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS password_history (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    principal_id    TEXT NOT NULL,
    password_hash   TEXT NOT NULL,
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_password_history_principal
    ON password_history (principal_id, id);

CREATE TABLE IF NOT EXISTS security_metrics (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    recorded_at     TEXT NOT NULL,
    total_events    INTEGER NOT NULL DEFAULT 0,
    security_events INTEGER NOT NULL DEFAULT 0,
    alerts          INTEGER NOT NULL DEFAULT 0,
    incidents       INTEGER NOT NULL DEFAULT 0,
    open_incidents  INTEGER NOT NULL DEFAULT 0,
    system_health   TEXT NOT NULL DEFAULT 'normal'
);
"""


def _migrate_1_to_2(conn: sqlite3.Connection) -> None:
    conn.executescript(_V2_SCHEMA)
    # Databases created before incidents carried a subject
    if "subject" not in _columns(conn, "incidents"):
        conn.execute("ALTER TABLE incidents ADD COLUMN subject TEXT NOT NULL DEFAULT ''")


MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _migrate_0_to_1,
    _migrate_1_to_2,
]

LATEST_SCHEMA_VERSION = len(MIGRATIONS)


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply every pending migration in order; returns the resulting version."""
    current = get_user_version(conn)
    if current > LATEST_SCHEMA_VERSION:
        logger.warning(
            "Database schema v%d is newer than this build supports (v%d)",
            current,
            LATEST_SCHEMA_VERSION,
        )
        return current
    for version in range(current, LATEST_SCHEMA_VERSION):
        logger.info("Migrating database schema v%d -> v%d", version, version + 1)
        MIGRATIONS[version](conn)
        _set_user_version(conn, version + 1)
        conn.commit()
    return get_user_version(conn)
