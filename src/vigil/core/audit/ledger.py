"""
IntegrityChain — the append-only, hash-chained audit ledger.

Every append seals the entry against the current chain head, persists it,
and advances the head, all under one lock per chain, so concurrent callers
always produce a gap-free chain. Subscribers (the threat detector) are
notified after the lock is released.

A write that cannot complete within the write timeout is spooled to the
fallback sink and the caller carries on, unless the action is
compliance-critical, in which case TransientStorageFailure is raised so
the caller fails closed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from vigil.core.audit.chain import Violation, genesis_hash, seal, verify_entries
from vigil.core.audit.fallback import FallbackSink
from vigil.core.audit.models import (
    AccessResult,
    Actor,
    AuditEntry,
    Classification,
    ClientContext,
    EventType,
    Resource,
)
from vigil.core.clock import Clock, SystemClock
from vigil.core.constants import (
    DEFAULT_CHAIN_ID,
    LEDGER_RETRY_ATTEMPTS,
    LEDGER_RETRY_BASE_DELAY,
    LEDGER_WRITE_TIMEOUT_SECONDS,
)
from vigil.core.exceptions import (
    IntegrityViolationError,
    StorageError,
    TransientStorageFailure,
)
from vigil.core.store.ports import LedgerStore

logger = logging.getLogger(__name__)

Subscriber = Callable[[AuditEntry], None]


@dataclass(frozen=True)
class VerificationReport:
    chain_id: str
    ok: bool
    checked: int
    verified_at: datetime
    start: datetime | None = None
    end: datetime | None = None
    first_id: int | None = None
    last_id: int | None = None
    violations: tuple[Violation, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "ok": self.ok,
            "checked": self.checked,
            "verified_at": self.verified_at.isoformat(),
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "first_id": self.first_id,
            "last_id": self.last_id,
            "violations": [v.to_dict() for v in self.violations],
        }

    def raise_for_violations(self) -> None:
        """Raise IntegrityViolationError when the verified range is not intact."""
        if self.ok:
            return
        first = self.violations[0]
        raise IntegrityViolationError(
            f"chain {self.chain_id}: {len(self.violations)} violation(s), "
            f"first at entry {first.entry_id}",
            self.violations,
        )


class IntegrityChain:
    """
    One logical hash chain over a :class:`LedgerStore`.

    Usage::

        chain = IntegrityChain(db, fallback=FallbackSink(path))
        chain.initialize()
        chain.subscribe(detector.observe)
        chain.record(EventType.LOGIN_SUCCESS, "login", actor=Actor("u1"))
        report = chain.verify_range()
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        chain_id: str = DEFAULT_CHAIN_ID,
        fallback: FallbackSink | None = None,
        clock: Clock | None = None,
        write_timeout: float = LEDGER_WRITE_TIMEOUT_SECONDS,
        retry_attempts: int = LEDGER_RETRY_ATTEMPTS,
        synchronous_actions: Iterable[str] = (),
    ) -> None:
        self._store = store
        self.chain_id = chain_id
        self._fallback = fallback
        self._clock = clock or SystemClock()
        self._write_timeout = write_timeout
        self._retry_attempts = max(1, retry_attempts)
        self._synchronous = frozenset(a.upper() for a in synchronous_actions)
        self._lock = threading.Lock()
        self._head: str | None = None
        self._subscribers: list[Subscriber] = []
        self.appended = 0
        self.spooled = 0

    # ------------------------------------------------------------------
    # Head
    # ------------------------------------------------------------------

    def initialize(self) -> str:
        """Load the chain head from the newest persisted entry (or genesis)."""
        with self._lock:
            self._head = self._load_head()
            return self._head

    def _load_head(self) -> str:
        last = self._store.last_audit_entry(self.chain_id)
        return last.integrity_hash if last else genesis_hash(self.chain_id)

    @property
    def head(self) -> str | None:
        return self._head

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def is_synchronous(self, event_type: EventType | str) -> bool:
        return str(event_type).upper() in self._synchronous

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def record(
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
        require_durable: bool | None = None,
    ) -> AuditEntry | None:
        """Build an entry stamped with the chain's clock and append it."""
        entry = AuditEntry.create(
            event_type,
            action,
            timestamp=self._clock.now(),
            actor=actor,
            resource=resource,
            classification=classification,
            result=result,
            client=client,
            metadata=metadata,
            chain_id=self.chain_id,
        )
        return self.append(entry, require_durable=require_durable)

    def append(
        self, entry: AuditEntry, *, require_durable: bool | None = None
    ) -> AuditEntry | None:
        """
        Seal and persist *entry*.

        Returns the stored entry, or None if it was spooled to the fallback
        sink instead.

        Raises:
            TransientStorageFailure: when the write failed and the action is
                compliance-critical (or *require_durable* is set).
        """
        durable = (
            self.is_synchronous(entry.event_type) if require_durable is None else require_durable
        )
        try:
            stored = self._persist(entry)
        except StorageError as exc:
            self._spill(entry, str(exc))
            if durable:
                raise TransientStorageFailure(
                    f"audit write for {entry.event_type} did not complete: {exc}"
                ) from exc
            return None
        self._notify(stored)
        return stored

    def _persist(self, entry: AuditEntry) -> AuditEntry:
        deadline = time.monotonic() + self._write_timeout
        if not self._lock.acquire(timeout=self._write_timeout):
            raise TransientStorageFailure(
                f"ledger lock not acquired within {self._write_timeout:.1f}s"
            )
        try:
            if self._head is None:
                self._head = self._load_head()
            if entry.chain_id != self.chain_id:
                entry = replace(entry, chain_id=self.chain_id)
            sealed = seal(entry, self._head)
            entry_id = self._write_with_retry(sealed, deadline)
            self._head = sealed.integrity_hash
            self.appended += 1
            return sealed.with_id(entry_id)
        finally:
            self._lock.release()

    def _write_with_retry(self, sealed: AuditEntry, deadline: float) -> int:
        delay = LEDGER_RETRY_BASE_DELAY
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return self._store.insert_audit_entry(sealed)
            except TransientStorageFailure as exc:
                if attempt == self._retry_attempts or time.monotonic() + delay > deadline:
                    raise
                logger.warning(
                    "Audit write attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt,
                    self._retry_attempts,
                    exc,
                    delay,
                )
                time.sleep(delay)
                delay *= 2
        raise TransientStorageFailure("audit write retries exhausted")  # pragma: no cover

    def _spill(self, entry: AuditEntry, error: str) -> None:
        self.spooled += 1
        logger.error("Audit write failed for %s: %s", entry.event_type, error)
        if self._fallback is None:
            logger.critical("No fallback sink configured; audit entry %s lost", entry.event_type)
            return
        self._fallback.write(entry, error=error)

    def _notify(self, entry: AuditEntry) -> None:
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:  # noqa: BLE001
                logger.exception("Audit subscriber %r failed on entry %s", callback, entry.id)

    # ------------------------------------------------------------------
    # Fallback replay
    # ------------------------------------------------------------------

    def replay_fallback(self) -> int:
        """
        Re-append spooled entries in order. Stops at the first failure and
        leaves the rest spooled. Returns the number replayed.
        """
        if self._fallback is None:
            return 0
        pending = self._fallback.pending()
        replayed = 0
        for entry in pending:
            try:
                stored = self._persist(entry)
            except StorageError as exc:
                logger.warning(
                    "Fallback replay stopped after %d/%d entries: %s", replayed, len(pending), exc
                )
                break
            replayed += 1
            self._notify(stored)
        if replayed:
            self._fallback.discard(replayed)
            logger.info("Replayed %d spooled audit entries into chain %s", replayed, self.chain_id)
        return replayed

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        exhaustive: bool = False,
    ) -> VerificationReport:
        """
        Verify every entry stamped between *start* and *end* (inclusive).

        Read-only. Storage failures propagate as StorageError.
        """
        now = self._clock.now()
        bounds = self._store.audit_id_bounds(self.chain_id, start, end)
        if bounds is None:
            return VerificationReport(
                chain_id=self.chain_id, ok=True, checked=0, verified_at=now, start=start, end=end
            )
        first_id, last_id = bounds
        previous = self._store.audit_entry_before(self.chain_id, first_id)
        anchor = previous.integrity_hash if previous else genesis_hash(self.chain_id)

        entries = self._store.iter_audit_entries(self.chain_id, first_id, last_id)
        checked, violations = verify_entries(entries, anchor, exhaustive=exhaustive)
        for v in violations:
            logger.error("Audit chain %s: %s", self.chain_id, v.describe())
        return VerificationReport(
            chain_id=self.chain_id,
            ok=not violations,
            checked=checked,
            verified_at=now,
            start=start,
            end=end,
            first_id=first_id,
            last_id=last_id,
            violations=tuple(violations),
        )
