"""
Injection signatures: the fixed pattern set scanned on inbound requests.

The built-in set covers SQL keywords and comment markers, script/iframe
and inline event-handler tags, path traversal, and shell metacharacters.
Deployments may replace or extend it from a YAML file::

    signatures:
      - name: sql_injection
        pattern: "(?i)\\bunion\\b\\s+select"
      - name: ldap_injection
        pattern: "\\*\\)\\(|\\)\\(\\|"
        enabled: true

Usage::

    signatures = load_signatures("~/.vigil/signatures.yaml")
    signatures = default_signatures()
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator


class SignatureParseError(ValueError):
    """Raised when a signature file cannot be parsed or fails validation."""


@dataclass(frozen=True)
class Signature:
    name: str
    regex: re.Pattern[str]

    def search(self, text: str) -> bool:
        return self.regex.search(text) is not None


_BUILTIN: tuple[tuple[str, str], ...] = (
    (
        "sql_injection",
        r"(?i)(\bunion\b\s+(all\s+)?\bselect\b"
        r"|\b(select|insert|update|delete|drop|alter)\b[\s\S]*\b(from|into|set|table|where)\b"
        r"|'\s*or\s+'?\d+'?\s*=\s*'?\d+"
        r"|--|/\*|\*/|\bxp_\w+|;\s*shutdown\b)",
    ),
    (
        "xss",
        r"(?i)(<\s*script|javascript:|\bon(error|load|click|mouseover)\s*="
        r"|<\s*iframe|<\s*object|<\s*embed)",
    ),
    ("path_traversal", r"(?i)(\.\./|\.\.\\|%2e%2e(%2f|%5c|/|\\))"),
    ("command_injection", r"(;\s*\w|\|\s*\w|`|\$\(|&&|\|\|)"),
)


def default_signatures() -> list[Signature]:
    return [Signature(name, re.compile(pattern)) for name, pattern in _BUILTIN]


# ---------------------------------------------------------------------------
# YAML signature files
# ---------------------------------------------------------------------------


class SignatureSpec(BaseModel):
    name: str = Field(min_length=1)
    pattern: str
    enabled: bool = True

    @field_validator("pattern")
    @classmethod
    def compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return v


class SignatureFile(BaseModel):
    include_defaults: bool = True
    signatures: list[SignatureSpec] = Field(default_factory=list)


def parse_signatures(yaml_text: str, source: str = "<string>") -> list[Signature]:
    """
    Parse a YAML signature document.

    Entries override built-ins with the same name; ``enabled: false``
    removes a built-in.

    Raises:
        SignatureParseError: on YAML syntax errors or schema violations.
    """
    import yaml

    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise SignatureParseError(f"YAML syntax error in {source}: {exc}") from exc

    if not isinstance(data, dict):
        raise SignatureParseError(
            f"Signature file {source} must be a YAML mapping (got {type(data).__name__})"
        )

    try:
        spec = SignatureFile.model_validate(data)
    except ValidationError as exc:
        lines = [f"Signature validation failed in {source}:"]
        for err in exc.errors():
            loc = " → ".join(str(x) for x in err["loc"]) if err["loc"] else "(root)"
            lines.append(f"  {loc}: {err['msg']}")
        raise SignatureParseError("\n".join(lines)) from exc

    merged: dict[str, Signature] = {}
    if spec.include_defaults:
        merged = {s.name: s for s in default_signatures()}
    for item in spec.signatures:
        if item.enabled:
            merged[item.name] = Signature(item.name, re.compile(item.pattern))
        else:
            merged.pop(item.name, None)
    return list(merged.values())


def load_signatures(path: str | Path) -> list[Signature]:
    """Load signatures from a YAML file. Raises SignatureParseError if missing or invalid."""
    p = Path(path).expanduser()
    if not p.exists():
        raise SignatureParseError(f"Signature file not found: {p}")
    try:
        content = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise SignatureParseError(f"Cannot read signature file {p}: {exc}") from exc
    return parse_signatures(content, source=str(p))


def scan(signatures: list[Signature], texts: list[str]) -> list[str]:
    """Names of the signatures matching any of *texts*, in signature order."""
    return [sig.name for sig in signatures if any(sig.search(t) for t in texts if t)]
