"""
Fallback sink: a local JSONL spool for audit entries the ledger could not persist.

Entries are written unsealed; they join the chain when replayed, so the
stored chain never contains a gap. The spool is only truncated after every
spooled entry has been re-appended.

Usage::

    sink = FallbackSink(path)
    sink.write(entry, error="database is locked")

    for entry in sink.pending():
        ...
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from vigil.core.audit.models import AuditEntry, format_timestamp

logger = logging.getLogger(__name__)


class FallbackSink:
    """
    Append-only JSONL spool.

    Thread-safe within one process. Write failures are logged at ERROR and
    reported through the return value; they never raise.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, entry: AuditEntry, error: str = "") -> bool:
        """Spool one entry. Returns False if even the spool could not be written."""
        record: dict[str, Any] = {
            "spooled_at": format_timestamp(entry.timestamp),
            "error": error,
            "entry": entry.to_dict(),
        }
        line = json.dumps(record, sort_keys=True, default=str)
        with self._lock:
            try:
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
            except OSError as exc:
                logger.critical(
                    "FallbackSink: audit entry lost, cannot write to %s: %s (event=%s)",
                    self.path,
                    exc,
                    entry.event_type,
                )
                return False
        logger.warning(
            "Audit entry spooled to %s (event=%s): %s", self.path, entry.event_type, error
        )
        return True

    def pending(self) -> list[AuditEntry]:
        """Return spooled entries (oldest first); unparseable lines are skipped and logged."""
        if not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        with self._lock:
            try:
                lines = self.path.read_text(encoding="utf-8").splitlines()
            except OSError as exc:
                logger.error("FallbackSink: cannot read %s: %s", self.path, exc)
                return []
        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(AuditEntry.from_dict(json.loads(line)["entry"]))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.error(
                    "FallbackSink: skipping malformed line %d in %s: %s", lineno, self.path, exc
                )
        return entries

    def __len__(self) -> int:
        return len(self.pending())

    def discard(self, count: int) -> None:
        """Drop the first *count* valid spooled entries; malformed lines are kept."""
        with self._lock:
            if not self.path.exists():
                return
            try:
                remaining: list[str] = []
                dropped = 0
                for ln in self.path.read_text(encoding="utf-8").splitlines():
                    if not ln.strip():
                        continue
                    if dropped < count and _is_valid(ln):
                        dropped += 1
                        continue
                    remaining.append(ln)
                tmp = self.path.with_suffix(".tmp")
                tmp.write_text("".join(ln + "\n" for ln in remaining), encoding="utf-8")
                tmp.replace(self.path)
            except OSError as exc:
                logger.error("FallbackSink: cannot truncate %s: %s", self.path, exc)


def _is_valid(line: str) -> bool:
    try:
        AuditEntry.from_dict(json.loads(line)["entry"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return False
    return True
