"""Notification providers — console and Slack."""

from __future__ import annotations

import abc
import logging
from typing import Any

import requests

logger = logging.getLogger(__name__)


class NotificationSink(abc.ABC):
    """Receives run-state-changed events."""

    @abc.abstractmethod
    def notify(self, event: dict[str, Any]) -> bool:
        """Deliver one event.

        Parameters
        ----------
        event:
            Event dict with keys: type, run_id, pipeline, status, terminal,
            branch, commit, environments, failed_stage, reason, summary,
            timestamp.

        Returns True if the event was delivered.
        """

    def is_available(self) -> bool:
        """Return True if the sink is ready to deliver."""
        return True


class ConsoleNotifier(NotificationSink):
    """Always-available log-backed sink that also keeps events in memory."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def notify(self, event: dict[str, Any]) -> bool:
        self._log.append(event)
        logger.info(
            "[conveyor] run %s %s: branch=%s %s",
            event.get("run_id", ""),
            event.get("status", "unknown"),
            event.get("branch", ""),
            event.get("summary", ""),
        )
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Delivered events, oldest first."""
        return list(self._log)


class SlackNotifier(NotificationSink):
    """Slack incoming-webhook sink.  Only terminal events are posted."""

    def __init__(self, webhook_url: str | None = None, *, timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def notify(self, event: dict[str, Any]) -> bool:
        if not self.is_available():
            logger.warning("Slack notifier unavailable, skipping.")
            return False
        if not event.get("terminal"):
            return True

        envs = ", ".join(event.get("environments") or []) or "none"
        text = (
            f"*{event.get('pipeline', 'pipeline')}* run `{event.get('run_id', '')}` "
            f"{event.get('status', '').upper()} on `{event.get('branch', '')}` "
            f"@ `{str(event.get('commit', ''))[:12]}` | environments: {envs}\n"
            f"{event.get('summary', '')}"
        )
        try:
            resp = requests.post(self._webhook_url, json={"text": text}, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning("Slack notification failed: %s", exc)
            return False
        if resp.status_code >= 400:
            logger.warning("Slack notification rejected: HTTP %s", resp.status_code)
            return False
        return True
