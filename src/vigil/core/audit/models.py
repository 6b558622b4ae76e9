"""
Audit ledger data model.

An :class:`AuditEntry` is immutable once sealed: its ``integrity_hash``
commits to every other field plus the hash of the entry before it.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from vigil.core.clock import utc
from vigil.core.constants import DEFAULT_CHAIN_ID
from vigil.core.exceptions import MetadataError


class EventType(StrEnum):
    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"

    # Session lifecycle
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    SESSION_EVICTED = "SESSION_EVICTED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    SESSION_SWEEP_SUMMARY = "SESSION_SWEEP_SUMMARY"

    # Record access
    RECORD_ACCESS = "RECORD_ACCESS"
    RECORD_CREATE = "RECORD_CREATE"
    RECORD_UPDATE = "RECORD_UPDATE"
    RECORD_DELETE = "RECORD_DELETE"
    RECORD_EXPORT = "RECORD_EXPORT"
    RECORD_PRINT = "RECORD_PRINT"
    FILE_UPLOAD = "FILE_UPLOAD"
    FILE_DOWNLOAD = "FILE_DOWNLOAD"

    # Administration
    USER_CREATED = "USER_CREATED"
    USER_MODIFIED = "USER_MODIFIED"
    USER_DELETED = "USER_DELETED"
    ROLE_CHANGED = "ROLE_CHANGED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"
    SYSTEM_CONFIG_CHANGED = "SYSTEM_CONFIG_CHANGED"

    # Security
    ACCESS_DENIED = "ACCESS_DENIED"
    INVALID_REQUEST = "INVALID_REQUEST"
    INJECTION_ATTEMPT = "INJECTION_ATTEMPT"
    SECURITY_INCIDENT = "SECURITY_INCIDENT"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    COMPLIANCE_GAP = "COMPLIANCE_GAP"

    # System
    SYSTEM_START = "SYSTEM_START"
    SYSTEM_STOP = "SYSTEM_STOP"
    AUDIT_REPORT_GENERATED = "AUDIT_REPORT_GENERATED"


ADMIN_EVENTS: frozenset[EventType] = frozenset(
    {
        EventType.USER_CREATED,
        EventType.USER_MODIFIED,
        EventType.USER_DELETED,
        EventType.ROLE_CHANGED,
        EventType.PERMISSION_GRANTED,
        EventType.PERMISSION_REVOKED,
        EventType.SYSTEM_CONFIG_CHANGED,
    }
)

EXPORT_EVENTS: frozenset[EventType] = frozenset(
    {EventType.RECORD_EXPORT, EventType.RECORD_PRINT, EventType.FILE_DOWNLOAD}
)


class Classification(StrEnum):
    PUBLIC = "public"
    SENSITIVE = "sensitive"
    RESTRICTED = "restricted"


class AccessResult(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    FAILED = "failed"


# Resource types whose records are always treated as restricted / sensitive
_RESTRICTED_RESOURCES = frozenset(
    {"record", "report", "warrant", "criminal_history", "case_file", "evidence"}
)
_SENSITIVE_RESOURCES = frozenset({"user", "session", "credential", "audit_log", "file"})


def classify_resource(resource_type: str) -> Classification:
    """Default data classification for a resource type."""
    kind = resource_type.lower()
    if kind in _RESTRICTED_RESOURCES:
        return Classification.RESTRICTED
    if kind in _SENSITIVE_RESOURCES:
        return Classification.SENSITIVE
    return Classification.PUBLIC


# ---------------------------------------------------------------------------
# Client context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Location:
    """Coarse location of a client, as resolved by the host application."""

    country: str
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {"country": self.country, "lat": self.latitude, "lon": self.longitude}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Location | None:
        country = data.get("country")
        if not country:
            return None
        return cls(country=str(country), latitude=data.get("lat"), longitude=data.get("lon"))


@dataclass(frozen=True)
class ClientContext:
    ip_address: str = ""
    user_agent: str = ""
    method: str = ""
    path: str = ""
    response_code: int | None = None
    location: Location | None = None


@dataclass(frozen=True)
class Actor:
    principal_id: str | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class Resource:
    type: str
    id: str = ""


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

MAX_METADATA_DEPTH = 3
MAX_METADATA_KEYS = 64
MAX_METADATA_STRING = 4096
REDACTED = "[REDACTED]"

_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "new_password",
        "old_password",
        "ssn",
        "credit_card",
        "creditcard",
        "token",
        "access_token",
        "refresh_token",
        "secret",
        "api_key",
    }
)

REQUIRED_METADATA: dict[EventType, frozenset[str]] = {
    EventType.SESSION_TERMINATED: frozenset({"session_id", "reason"}),
    EventType.SESSION_EVICTED: frozenset({"session_id"}),
    EventType.SESSION_TIMEOUT: frozenset({"session_id"}),
    EventType.SESSION_SWEEP_SUMMARY: frozenset({"count"}),
    EventType.SECURITY_INCIDENT: frozenset({"alert_type", "severity"}),
    EventType.INJECTION_ATTEMPT: frozenset({"signatures"}),
}


def clean_text(value: str) -> str:
    """Escape lone surrogates so the text always encodes as UTF-8."""
    return value.encode("utf-8", "backslashreplace").decode("utf-8")


def _optional_text(value: str | None) -> str | None:
    return None if value is None else clean_text(value)


def _normalize_value(value: Any, depth: int) -> Any:
    if isinstance(value, str):
        return clean_text(value[:MAX_METADATA_STRING])
    if value is None or isinstance(value, bool | int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MetadataError("metadata floats must be finite")
        return value
    if depth >= MAX_METADATA_DEPTH:
        raise MetadataError(f"metadata nested deeper than {MAX_METADATA_DEPTH} levels")
    if isinstance(value, Mapping):
        return _normalize_map(value, depth + 1)
    if isinstance(value, list | tuple):
        return [_normalize_value(v, depth + 1) for v in value]
    raise MetadataError(f"unsupported metadata value type: {type(value).__name__}")


def _normalize_map(data: Mapping[Any, Any], depth: int) -> dict[str, Any]:
    if len(data) > MAX_METADATA_KEYS:
        raise MetadataError(f"metadata has more than {MAX_METADATA_KEYS} keys")
    out: dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise MetadataError("metadata keys must be strings")
        key = clean_text(key)
        if key.lower() in _SENSITIVE_KEYS:
            out[key] = REDACTED
        else:
            out[key] = _normalize_value(value, depth)
    return out


def normalize_metadata(
    data: Mapping[str, Any] | None, event_type: EventType | None = None
) -> dict[str, Any]:
    """
    Validate and normalise audit metadata.

    Sensitive keys are redacted, strings truncated, and the event type's
    required keys enforced.

    Raises:
        MetadataError: when the value does not fit the bounded schema.
    """
    out = _normalize_map(data or {}, 0)
    if event_type is not None:
        missing = REQUIRED_METADATA.get(event_type, frozenset()) - out.keys()
        if missing:
            raise MetadataError(
                f"{event_type} metadata missing required keys: {', '.join(sorted(missing))}"
            )
    return out


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    event_type: EventType
    action: str
    timestamp: datetime
    resource_type: str = ""
    resource_id: str = ""
    actor_id: str | None = None
    actor_name: str | None = None
    classification: Classification = Classification.PUBLIC
    access_result: AccessResult = AccessResult.GRANTED
    ip_address: str = ""
    user_agent: str = ""
    request_method: str = ""
    request_path: str = ""
    response_code: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    chain_id: str = DEFAULT_CHAIN_ID
    previous_hash: str = ""
    integrity_hash: str = ""
    id: int | None = None

    @classmethod
    def create(
        cls,
        event_type: EventType,
        action: str,
        *,
        timestamp: datetime,
        actor: Actor | None = None,
        resource: Resource | None = None,
        classification: Classification | None = None,
        result: AccessResult = AccessResult.GRANTED,
        client: ClientContext | None = None,
        metadata: Mapping[str, Any] | None = None,
        chain_id: str = DEFAULT_CHAIN_ID,
    ) -> AuditEntry:
        """Build an unsealed entry from request-level objects."""
        actor = actor or Actor()
        resource = resource or Resource(type="")
        client = client or ClientContext()
        meta = normalize_metadata(metadata, event_type)
        if client.location is not None and "geo" not in meta:
            meta["geo"] = client.location.to_dict()
        if classification is None:
            classification = classify_resource(resource.type)
        return cls(
            event_type=EventType(event_type),
            action=clean_text(action),
            timestamp=utc(timestamp),
            resource_type=clean_text(resource.type),
            resource_id=clean_text(resource.id),
            actor_id=_optional_text(actor.principal_id),
            actor_name=_optional_text(actor.display_name),
            classification=Classification(classification),
            access_result=AccessResult(result),
            ip_address=clean_text(client.ip_address),
            user_agent=clean_text(client.user_agent),
            request_method=clean_text(client.method),
            request_path=clean_text(client.path),
            response_code=client.response_code,
            metadata=meta,
            chain_id=chain_id,
        )

    @property
    def location(self) -> Location | None:
        geo = self.metadata.get("geo")
        if isinstance(geo, Mapping):
            return Location.from_dict(geo)
        return None

    def with_seal(self, previous_hash: str, integrity_hash: str) -> AuditEntry:
        return replace(self, previous_hash=previous_hash, integrity_hash=integrity_hash)

    def with_id(self, entry_id: int) -> AuditEntry:
        return replace(self, id=entry_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": str(self.event_type),
            "action": self.action,
            "timestamp": format_timestamp(self.timestamp),
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "classification": str(self.classification),
            "access_result": str(self.access_result),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_method": self.request_method,
            "request_path": self.request_path,
            "response_code": self.response_code,
            "metadata": self.metadata,
            "chain_id": self.chain_id,
            "previous_hash": self.previous_hash,
            "integrity_hash": self.integrity_hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditEntry:
        return cls(
            id=data.get("id"),
            event_type=EventType(data["event_type"]),
            action=data["action"],
            timestamp=parse_timestamp(data["timestamp"]),
            resource_type=data.get("resource_type") or "",
            resource_id=data.get("resource_id") or "",
            actor_id=data.get("actor_id"),
            actor_name=data.get("actor_name"),
            classification=Classification(data.get("classification", "public")),
            access_result=AccessResult(data.get("access_result", "granted")),
            ip_address=data.get("ip_address") or "",
            user_agent=data.get("user_agent") or "",
            request_method=data.get("request_method") or "",
            request_path=data.get("request_path") or "",
            response_code=data.get("response_code"),
            metadata=dict(data.get("metadata") or {}),
            chain_id=data.get("chain_id") or DEFAULT_CHAIN_ID,
            previous_hash=data.get("previous_hash") or "",
            integrity_hash=data.get("integrity_hash") or "",
        )


def format_timestamp(dt: datetime) -> str:
    """Canonical timestamp text: UTC, microsecond precision, ``+00:00`` suffix."""
    return utc(dt).isoformat(timespec="microseconds")


def parse_timestamp(text: str) -> datetime:
    return utc(datetime.fromisoformat(text))
