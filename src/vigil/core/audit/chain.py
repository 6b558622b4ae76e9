"""
Hash-chain primitives. Pure functions, no I/O.

    integrity_hash = SHA-256( canonical_bytes(entry) || 0x0A || previous_hash )

``canonical_bytes`` is a sorted-key, compact JSON encoding of every entry
field except ``id`` and the two hash fields, so the same entry always
produces the same bytes regardless of dict ordering.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from vigil.core.audit.models import AuditEntry
from vigil.core.constants import DEFAULT_CHAIN_ID, GENESIS_SEED


def genesis_hash(chain_id: str = DEFAULT_CHAIN_ID) -> str:
    """Anchor hash for the first entry of *chain_id*."""
    seed = GENESIS_SEED if chain_id == DEFAULT_CHAIN_ID else f"{GENESIS_SEED}:{chain_id}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def canonical_bytes(entry: AuditEntry) -> bytes:
    fields = entry.to_dict()
    for key in ("id", "previous_hash", "integrity_hash"):
        fields.pop(key)
    return json.dumps(
        fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def compute_hash(entry: AuditEntry, previous_hash: str) -> str:
    h = hashlib.sha256()
    h.update(canonical_bytes(entry))
    h.update(b"\n")
    h.update(previous_hash.encode("utf-8"))
    return h.hexdigest()


def seal(entry: AuditEntry, previous_hash: str) -> AuditEntry:
    """Return *entry* with ``previous_hash`` and ``integrity_hash`` filled in."""
    return entry.with_seal(previous_hash, compute_hash(entry, previous_hash))


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class ViolationKind(StrEnum):
    CHAIN_DISCONTINUITY = "chain_discontinuity"
    CONTENT_MISMATCH = "content_mismatch"


@dataclass(frozen=True)
class Violation:
    entry_id: int | None
    kind: ViolationKind
    expected: str
    actual: str

    def describe(self) -> str:
        if self.kind is ViolationKind.CHAIN_DISCONTINUITY:
            return (
                f"entry {self.entry_id}: chain discontinuity "
                f"(expected previous {self.expected[:12]}, found {self.actual[:12]})"
            )
        return (
            f"entry {self.entry_id}: hash mismatch, possible tampering "
            f"(computed {self.expected[:12]}, stored {self.actual[:12]})"
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "entry_id": self.entry_id,
            "kind": str(self.kind),
            "expected": self.expected,
            "actual": self.actual,
        }


def verify_entries(
    entries: Iterable[AuditEntry], anchor_hash: str, *, exhaustive: bool = False
) -> tuple[int, list[Violation]]:
    """
    Check continuity and content of *entries* (ascending id order).

    Continuity compares each entry's stored ``previous_hash`` to the stored
    ``integrity_hash`` of the entry before it (``anchor_hash`` for the first).
    Content recomputes the hash from the stored fields.

    Returns ``(count, violations)``. Stops at the first violation unless
    *exhaustive*.
    """
    violations: list[Violation] = []
    expected_previous = anchor_hash
    count = 0
    for entry in entries:
        count += 1
        if entry.previous_hash != expected_previous:
            violations.append(
                Violation(
                    entry.id,
                    ViolationKind.CHAIN_DISCONTINUITY,
                    expected=expected_previous,
                    actual=entry.previous_hash,
                )
            )
        else:
            computed = compute_hash(entry, entry.previous_hash)
            if computed != entry.integrity_hash:
                violations.append(
                    Violation(
                        entry.id,
                        ViolationKind.CONTENT_MISMATCH,
                        expected=computed,
                        actual=entry.integrity_hash,
                    )
                )
        if violations and not exhaustive:
            break
        expected_previous = entry.integrity_hash
    return count, violations
