from __future__ import annotations

from typing import List, Protocol

from storymode.schemas.models import Notification
from storymode.utils.logging import get_logger

log = get_logger(__name__)


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LogNotificationSink:
    def notify(self, notification: Notification) -> None:
        log.info(
            "user_notification",
            title=notification.title,
            description=notification.description,
            level=notification.level,
        )


class CollectingNotificationSink:
    """Keeps notifications in memory so a caller can return them with the turn."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


def safe_notify(sink: NotificationSink | None, notification: Notification) -> None:
    """Deliver a notification; a broken sink is logged and otherwise ignored."""

    if sink is None:
        return
    try:
        sink.notify(notification)
    except Exception as exc:
        log.warning("notification_sink_failed", title=notification.title, error=str(exc))
