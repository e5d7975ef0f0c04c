"""Run-state notifications."""

from conveyor.notifications.dispatcher import NotificationDispatcher, make_event
from conveyor.notifications.providers import ConsoleNotifier, NotificationSink, SlackNotifier

__all__ = [
    "ConsoleNotifier",
    "NotificationDispatcher",
    "NotificationSink",
    "SlackNotifier",
    "make_event",
]
