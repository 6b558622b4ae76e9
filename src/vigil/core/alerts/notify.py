"""
How incidents leave the process.

Contract:
  - ``notify`` may block (the dispatcher runs it off the caller's thread)
  - Failures raise; the dispatcher logs them and never rolls back the incident
  - Payloads carry incident metadata only, never credentials or record content
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from vigil.core.alerts.models import Incident, Severity
from vigil.core.constants import NOTIFY_TIMEOUT_SECONDS
from vigil.core.exceptions import VigilError

logger = logging.getLogger(__name__)


class NotificationError(VigilError):
    """Raised when a notification could not be delivered."""


class NotificationPort(ABC):
    """Interface for delivering incident notifications."""

    name = "base"

    @abstractmethod
    def notify(self, incident: Incident) -> None:
        """Deliver one incident notification. Raises NotificationError on failure."""
        ...

    def close(self) -> None:  # noqa: B027
        """Release any held resources."""


class DisabledNotifier(NotificationPort):
    """No-op notifier used when notifications are turned off."""

    name = "disabled"

    def notify(self, incident: Incident) -> None:
        pass


class LoggingNotifier(NotificationPort):
    """Writes incidents to the ``vigil.alerts`` log at a severity-matched level."""

    name = "log"

    _LEVELS = {
        Severity.LOW: logging.INFO,
        Severity.MEDIUM: logging.WARNING,
        Severity.HIGH: logging.ERROR,
        Severity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self) -> None:
        self._log = logging.getLogger("vigil.alerts")

    def notify(self, incident: Incident) -> None:
        self._log.log(
            self._LEVELS.get(incident.severity, logging.WARNING),
            "SECURITY INCIDENT %s [%s] %s subject=%s audit_entry=%s",
            incident.id,
            incident.severity,
            incident.type,
            incident.subject or "-",
            incident.audit_entry_id,
        )


class WebhookNotifier(NotificationPort):
    """POSTs the incident as JSON to a webhook URL."""

    name = "webhook"

    def __init__(self, url: str, *, timeout: float = NOTIFY_TIMEOUT_SECONDS) -> None:
        self._url = url
        self._timeout = timeout

    def notify(self, incident: Incident) -> None:
        import httpx

        try:
            resp = httpx.post(
                self._url,
                json={"event": "security_incident", "incident": incident.to_dict()},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise NotificationError(f"webhook delivery failed: {exc}") from exc
        if resp.status_code >= 400:
            raise NotificationError(f"webhook returned HTTP {resp.status_code}")


class MultiNotifier(NotificationPort):
    """Fan-out notifier: every sub-notifier is tried; one failing does not stop the rest."""

    name = "multi"

    def __init__(self, notifiers: list[NotificationPort]) -> None:
        if not notifiers:
            raise ValueError("MultiNotifier requires at least one notifier")
        self._notifiers = notifiers

    def notify(self, incident: Incident) -> None:
        failures: list[str] = []
        for n in self._notifiers:
            try:
                n.notify(incident)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Notifier %s failed for incident %s: %s", n.name, incident.id, exc)
                failures.append(n.name)
        if failures and len(failures) == len(self._notifiers):
            raise NotificationError(f"all notifiers failed: {', '.join(failures)}")

    def close(self) -> None:
        for n in self._notifiers:
            try:
                n.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error closing notifier %s: %s", n.name, exc)
