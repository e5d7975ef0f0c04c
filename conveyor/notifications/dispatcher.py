"""NotificationDispatcher — fans run events out to every available sink."""

from __future__ import annotations

import logging
import time
from typing import Any

from conveyor.models.run import RunState
from conveyor.notifications.providers import ConsoleNotifier, NotificationSink

logger = logging.getLogger(__name__)


def make_event(state: RunState, event_type: str = "run-state-changed") -> dict[str, Any]:
    """Build the event dict for *state*.

    Contains identifiers, status and the outcome summary only; stage
    output stays behind diagnostic references.
    """
    return {
        "type": event_type,
        "run_id": state.id,
        "pipeline": state.pipeline,
        "status": state.status.value,
        "terminal": state.status.is_terminal,
        "branch": state.branch,
        "commit": state.commit,
        "environments": list(state.environments_reached),
        "failed_stage": state.failed_stage,
        "reason": state.reason,
        "summary": state.summary(),
        "timestamp": time.time(),
    }


class NotificationDispatcher(NotificationSink):
    """Dispatch events to all configured sinks.

    Always includes a ConsoleNotifier.  A failing sink never affects the
    run or the other sinks.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None) -> None:
        self._console = ConsoleNotifier()
        self._sinks: list[NotificationSink] = [self._console]
        if sinks:
            self._sinks.extend(sinks)

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    @property
    def console(self) -> ConsoleNotifier:
        """The built-in console sink (useful for testing)."""
        return self._console

    def notify(self, event: dict[str, Any]) -> bool:
        delivered = True
        for sink in self._sinks:
            if not sink.is_available():
                continue
            try:
                delivered = sink.notify(event) and delivered
            except Exception as exc:
                logger.warning(
                    "Notification sink %s failed: %s",
                    type(sink).__name__,
                    exc,
                )
                delivered = False
        return delivered
