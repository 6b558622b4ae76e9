"""
Breach lookup via k-anonymity range queries against a breached-password corpus.

Only the first five hex characters of the password's SHA-1 digest leave
the process; the returned suffix list is scanned locally.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod

from vigil import __version__
from vigil.core.constants import BREACH_API_URL, BREACH_CHECK_TIMEOUT_SECONDS
from vigil.core.credentials.models import BreachResult
from vigil.core.exceptions import BreachCheckUnavailable

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 5


def sha1_split(password: str) -> tuple[str, str]:
    """Upper-case SHA-1 hex digest split into (prefix, suffix)."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()  # noqa: S324
    return digest[:PREFIX_LENGTH], digest[PREFIX_LENGTH:]


class BreachCheckPort(ABC):
    """Interface for breached-password range lookups."""

    @abstractmethod
    def check_prefix(self, prefix: str) -> dict[str, int]:
        """
        Return ``{suffix: occurrences}`` for every breached hash sharing *prefix*.

        Raises BreachCheckUnavailable when the service cannot be reached.
        """
        ...


class DisabledBreachCheck(BreachCheckPort):
    """Port used when breach lookups are turned off; nothing is ever breached."""

    def check_prefix(self, prefix: str) -> dict[str, int]:
        return {}


class PwnedPasswordsClient(BreachCheckPort):
    """HTTP client for a Pwned-Passwords-compatible range API."""

    def __init__(
        self,
        base_url: str = BREACH_API_URL,
        *,
        timeout: float = BREACH_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def check_prefix(self, prefix: str) -> dict[str, int]:
        import httpx

        url = f"{self._base_url}/range/{prefix}"
        try:
            resp = httpx.get(
                url,
                timeout=self._timeout,
                headers={"User-Agent": f"vigil/{__version__}", "Add-Padding": "true"},
            )
        except httpx.HTTPError as exc:
            raise BreachCheckUnavailable(f"breach lookup failed: {exc}") from exc
        if resp.status_code != 200:
            raise BreachCheckUnavailable(f"breach lookup returned HTTP {resp.status_code}")
        return parse_range_response(resp.text)


def parse_range_response(text: str) -> dict[str, int]:
    """Parse ``SUFFIX:COUNT`` lines; padding entries (count 0) are dropped."""
    out: dict[str, int] = {}
    for line in text.splitlines():
        suffix, sep, count = line.strip().partition(":")
        if not sep:
            continue
        try:
            n = int(count)
        except ValueError:
            continue
        if n > 0:
            out[suffix.upper()] = n
    return out


def check_password(port: BreachCheckPort, password: str) -> BreachResult:
    """
    Look *password* up through *port*.

    Raises:
        BreachCheckUnavailable: propagated from the port.
    """
    prefix, suffix = sha1_split(password)
    hits = port.check_prefix(prefix)
    occurrences = hits.get(suffix, 0)
    return BreachResult(compromised=occurrences > 0, checked=True, occurrences=occurrences)
