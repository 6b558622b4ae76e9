"""
Persistence ports.

Components depend on these interfaces rather than on SQLite directly.
:class:`vigil.core.store.database.Database` implements all of them.
Implementations raise :class:`~vigil.core.exceptions.StorageError` (or
its transient subclass) on failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from vigil.core.alerts.models import Incident, IncidentStatus
from vigil.core.audit.models import AuditEntry
from vigil.core.credentials.models import CredentialRecord
from vigil.core.session.models import EndReason, Session


class LedgerStore(ABC):
    @abstractmethod
    def insert_audit_entry(self, entry: AuditEntry) -> int:
        """Persist a sealed entry and return its assigned id."""

    @abstractmethod
    def last_audit_entry(self, chain_id: str) -> AuditEntry | None: ...

    @abstractmethod
    def audit_entry_before(self, chain_id: str, entry_id: int) -> AuditEntry | None: ...

    @abstractmethod
    def audit_id_bounds(
        self,
        chain_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[int, int] | None:
        """
        Smallest id stamped at/after *start* and largest id stamped at/before
        *end*; None when the range holds no entries.
        """

    @abstractmethod
    def iter_audit_entries(
        self,
        chain_id: str,
        from_id: int | None = None,
        to_id: int | None = None,
    ) -> Iterator[AuditEntry]:
        """Yield entries of *chain_id* in ascending id order within the inclusive id range."""


class SessionStore(ABC):
    @abstractmethod
    def insert_session(self, session: Session) -> None: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    def get_session_by_token(self, token_ref: str) -> Session | None: ...

    @abstractmethod
    def list_active_sessions(self, principal_id: str | None = None) -> list[Session]: ...

    @abstractmethod
    def list_expired_sessions(self, now: datetime) -> list[Session]: ...

    @abstractmethod
    def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime, **client: str
    ) -> bool:
        """Extend an active session; returns False if it is no longer active."""

    @abstractmethod
    def end_session(self, session_id: str, reason: EndReason, ended_at: datetime) -> bool:
        """Move an active session to its terminal state; False if it already ended."""


class IncidentStore(ABC):
    @abstractmethod
    def insert_incident(self, incident: Incident) -> None: ...

    @abstractmethod
    def get_incident(self, incident_id: str) -> Incident | None: ...

    @abstractmethod
    def list_incidents(
        self,
        status: IncidentStatus | None = None,
        limit: int = 100,
    ) -> list[Incident]: ...

    @abstractmethod
    def update_incident_status(
        self, incident_id: str, status: IncidentStatus, at: datetime
    ) -> bool: ...

    @abstractmethod
    def count_open_incidents(self) -> int: ...


class CredentialStore(ABC):
    @abstractmethod
    def get_credential(self, principal_id: str) -> CredentialRecord | None: ...

    @abstractmethod
    def save_credential(self, record: CredentialRecord) -> None: ...

    @abstractmethod
    def list_credentials(self) -> list[CredentialRecord]: ...

    @abstractmethod
    def password_history(self, principal_id: str, limit: int) -> list[str]:
        """Return up to *limit* stored password hashes, newest first."""

    @abstractmethod
    def add_password_history(
        self, principal_id: str, password_hash: str, created_at: datetime, keep: int
    ) -> None:
        """Store a hash and prune history beyond the newest *keep* entries."""


class MetricsStore(ABC):
    @abstractmethod
    def insert_metrics(self, recorded_at: datetime, values: dict[str, Any]) -> None: ...

    @abstractmethod
    def latest_metrics(self) -> dict[str, Any] | None: ...
