"""
SessionRegistry — session lifecycle with concurrency limits and timeouts.

State machine (terminal states are final; no resurrection)::

    none ──create──▶ active ──touch──▶ active
                        │
                        ├── idle timeout ──────▶ idle_expired
                        ├── absolute timeout ──▶ absolute_expired
                        ├── over limit ────────▶ evicted
                        └── invalidate ────────▶ logged_out

Operations on one principal's sessions are serialised by a per-principal
lock; the store's conditional updates (``WHERE active = 1``) settle races
with the background sweep.
"""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from vigil.core.audit.models import Actor, ClientContext, EventType, Resource, clean_text
from vigil.core.clock import Clock, SystemClock
from vigil.core.config import SessionConfig
from vigil.core.exceptions import SessionEvicted, SessionExpired, SessionNotFound
from vigil.core.session.models import (
    EndReason,
    IssuedSession,
    Session,
    SessionState,
    TouchResult,
    token_ref,
)
from vigil.core.store.ports import SessionStore

if TYPE_CHECKING:
    from vigil.core.audit.ledger import IntegrityChain

logger = logging.getLogger(__name__)

_SUMMARY_ID_LIMIT = 50


class SessionRegistry:
    def __init__(
        self,
        store: SessionStore,
        *,
        chain: IntegrityChain | None = None,
        clock: Clock | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._clock = clock or SystemClock()
        self._config = config or SessionConfig()
        # principal -> (lock, number of callers holding or waiting on it)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _principal_lock(self, principal_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(principal_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[principal_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _, users = self._locks[principal_id]
                if users == 1:
                    del self._locks[principal_id]
                else:
                    self._locks[principal_id] = (lock, users - 1)

    def _audit(self, event_type: EventType, session: Session, **metadata: object) -> None:
        if self._chain is None:
            return
        self._chain.record(
            event_type,
            str(event_type).lower(),
            actor=Actor(principal_id=session.principal_id),
            resource=Resource(type="session", id=session.id),
            client=ClientContext(ip_address=session.ip_address, user_agent=session.user_agent),
            metadata={"session_id": session.id, **metadata},
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, principal_id: str, client: ClientContext | None = None) -> IssuedSession:
        """
        Open a session for *principal_id*.

        Stale sessions are expired first; if the principal is still at the
        concurrency limit, the least-recently-active sessions are evicted.
        """
        client = client or ClientContext()
        with self._principal_lock(principal_id):
            now = self._clock.now()
            active: list[Session] = []
            for s in self._store.list_active_sessions(principal_id):
                reason = s.expiry_reason(now)
                if reason is not None:
                    self._end(s, reason, EventType.SESSION_TIMEOUT)
                else:
                    active.append(s)

            active.sort(key=lambda s: s.last_activity)
            while len(active) >= self._config.max_concurrent:
                oldest = active.pop(0)
                self._end(oldest, EndReason.CONCURRENT_LIMIT_EXCEEDED, EventType.SESSION_EVICTED)
                logger.info(
                    "Session %s evicted: %s exceeded %d concurrent sessions",
                    oldest.id,
                    principal_id,
                    self._config.max_concurrent,
                )

            token = secrets.token_urlsafe(32)
            session = Session(
                id=str(uuid.uuid4()),
                principal_id=principal_id,
                token_ref=token_ref(token),
                created_at=now,
                last_activity=now,
                expires_at=now + min(self._config.idle_timeout, self._config.absolute_timeout),
                absolute_expires_at=now + self._config.absolute_timeout,
                ip_address=clean_text(client.ip_address),
                user_agent=clean_text(client.user_agent),
            )
            self._store.insert_session(session)
        self._audit(EventType.SESSION_CREATED, session)
        return IssuedSession(session=session, token=token)

    # ------------------------------------------------------------------
    # Touch
    # ------------------------------------------------------------------

    def touch(self, session_id: str, client: ClientContext | None = None) -> TouchResult:
        """
        Record activity on a session and extend its idle expiry.

        Raises:
            SessionExpired: idle or absolute timeout elapsed.
            SessionEvicted: the session was displaced by a newer one.
            SessionNotFound: unknown or logged-out session.
        """
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound("session not found", session_id)
        return self._touch(session, client or ClientContext())

    def touch_token(self, token: str, client: ClientContext | None = None) -> TouchResult:
        session = self._store.get_session_by_token(token_ref(token))
        if session is None:
            raise SessionNotFound("no session for token")
        return self._touch(session, client or ClientContext())

    def resolve_token(self, token: str) -> Session | None:
        return self._store.get_session_by_token(token_ref(token))

    def _touch(self, session: Session, client: ClientContext) -> TouchResult:
        with self._principal_lock(session.principal_id):
            current = self._store.get_session(session.id) or session
            self._raise_if_ended(current)
            now = self._clock.now()
            reason = current.expiry_reason(now)
            if reason is not None:
                self._end(current, reason, EventType.SESSION_TIMEOUT)
                raise SessionExpired(f"session expired ({reason})", current.id)

            expires_at = min(now + self._config.idle_timeout, current.absolute_expires_at)
            if not self._store.touch_session(
                current.id,
                now,
                expires_at,
                ip_address=clean_text(client.ip_address),
                user_agent=clean_text(client.user_agent),
            ):
                # Ended between our read and the update (sweep or another caller)
                ended = self._store.get_session(current.id) or current
                self._raise_if_ended(ended)
                raise SessionNotFound("session is no longer active", current.id)

        updated = replace(
            current,
            last_activity=now,
            expires_at=expires_at,
            ip_address=clean_text(client.ip_address) or current.ip_address,
            user_agent=clean_text(client.user_agent) or current.user_agent,
        )
        remaining = updated.remaining(now)
        warning = remaining <= self._config.warning_threshold
        return TouchResult(session=updated, warning=warning, remaining=remaining)

    @staticmethod
    def _raise_if_ended(session: Session) -> None:
        if session.state is SessionState.ACTIVE:
            return
        if session.state is SessionState.EVICTED:
            raise SessionEvicted("session was evicted by a newer session", session.id)
        if session.state in (SessionState.IDLE_EXPIRED, SessionState.ABSOLUTE_EXPIRED):
            raise SessionExpired(f"session expired ({session.end_reason})", session.id)
        raise SessionNotFound("session has ended", session.id)

    # ------------------------------------------------------------------
    # Invalidate / sweep
    # ------------------------------------------------------------------

    def _end(self, session: Session, reason: EndReason, event_type: EventType) -> bool:
        if not self._store.end_session(session.id, reason, self._clock.now()):
            return False
        self._audit(event_type, session, reason=str(reason))
        return True

    def invalidate(self, session_id: str, reason: EndReason = EndReason.LOGOUT) -> bool:
        """End a session explicitly; returns False if it was already inactive."""
        session = self._store.get_session(session_id)
        if session is None:
            return False
        with self._principal_lock(session.principal_id):
            return self._end(session, reason, EventType.SESSION_TERMINATED)

    def invalidate_principal(
        self, principal_id: str, reason: EndReason = EndReason.USER_DEACTIVATED
    ) -> int:
        """End every active session of *principal_id*."""
        ended = 0
        with self._principal_lock(principal_id):
            for s in self._store.list_active_sessions(principal_id):
                if self._end(s, reason, EventType.SESSION_TERMINATED):
                    ended += 1
        return ended

    def sweep_expired(self) -> int:
        """
        End every active session past its expiry.

        Each ended session is audited individually unless the batch exceeds
        ``sweep_batch_size``, in which case one summary entry is written.
        """
        now = self._clock.now()
        ended: list[tuple[Session, EndReason]] = []
        for s in self._store.list_expired_sessions(now):
            reason = s.expiry_reason(now) or EndReason.IDLE_TIMEOUT
            with self._principal_lock(s.principal_id):
                if self._store.end_session(s.id, reason, now):
                    ended.append((s, reason))

        if not ended:
            return 0
        if len(ended) <= self._config.sweep_batch_size:
            for s, reason in ended:
                self._audit(EventType.SESSION_TIMEOUT, s, reason=str(reason))
        elif self._chain is not None:
            self._chain.record(
                EventType.SESSION_SWEEP_SUMMARY,
                "session_sweep",
                resource=Resource(type="session"),
                metadata={
                    "count": len(ended),
                    "session_ids": [s.id for s, _ in ended[:_SUMMARY_ID_LIMIT]],
                    "truncated": len(ended) > _SUMMARY_ID_LIMIT,
                },
            )
        logger.info("Session sweep ended %d expired session(s)", len(ended))
        return len(ended)

    def list_active(self, principal_id: str | None = None) -> list[Session]:
        return self._store.list_active_sessions(principal_id)

    @property
    def warning_threshold(self) -> timedelta:
        return self._config.warning_threshold
