from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

from workspace_sync.models import utc_now

logger = logging.getLogger(__name__)

NotificationLevel = Literal["info", "warning", "error"]


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    message: str
    workspace_id: str | None = None
    item_id: str | None = None
    error_kind: str | None = None
    created_at: datetime = field(default_factory=utc_now)


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    def notify(self, notification: Notification) -> None:
        log = {"info": logger.info, "warning": logger.warning, "error": logger.error}[notification.level]
        log(
            "%s workspace_id=%s item_id=%s kind=%s",
            notification.message,
            notification.workspace_id,
            notification.item_id,
            notification.error_kind,
        )


class CollectingNotifier:
    """Keeps notifications in memory (UI polling, tests)."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def drain(self) -> list[Notification]:
        out, self.notifications = self.notifications, []
        return out
