"""
Side-channel notifications posted by tools (search results, generated
images, session status). Rendering them (embeds, cards) belongs to the
chat front-end; the bridge only hands over structured notifications.
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from convai_bridge.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Notification:
    title: str
    description: str
    level: str = "info"  # info | success | error
    url: Optional[str] = None
    image_url: Optional[str] = None


class Notifier(ABC):
    """Where tools post user-facing progress and results."""

    @abstractmethod
    async def send(self, notification: Notification) -> Any:
        """Post a notification; returns a handle that `edit` accepts."""

    @abstractmethod
    async def edit(self, handle: Any, notification: Notification) -> None:
        """Replace a previously posted notification."""


class LogNotifier(Notifier):
    """Writes notifications to the structured log."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    async def send(self, notification: Notification) -> int:
        handle = next(self._ids)
        logger.info(
            "Notification",
            notification_id=handle,
            title=notification.title,
            description=notification.description,
            level=notification.level,
            url=notification.url,
            image_url=notification.image_url,
        )
        return handle

    async def edit(self, handle: Any, notification: Notification) -> None:
        logger.info(
            "Notification updated",
            notification_id=handle,
            title=notification.title,
            description=notification.description,
            level=notification.level,
            image_url=notification.image_url,
        )
