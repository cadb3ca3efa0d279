"""
Notification intents.

The engine only records what should be said to whom; an external transport
(push, SMS, email) reads the ``notifications`` collection and delivers.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from bloodmatch.cache import ReadThroughCache
from bloodmatch.database import NOTIFICATIONS
from bloodmatch.models import NotificationIntent, NotificationType

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class Notifier:
    def __init__(
        self,
        cache: ReadThroughCache,
        *,
        now_fn: NowFn = lambda: datetime.now(UTC),
    ) -> None:
        self._cache = cache
        self._now_fn = now_fn

    def emit(
        self,
        user_id: str,
        title: str,
        message: str,
        *,
        type: NotificationType = NotificationType.SYSTEM,
        related_entity_id: str | None = None,
        related_entity_type: str | None = None,
    ) -> NotificationIntent:
        intent = NotificationIntent(
            id=uuid.uuid4().hex,
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            related_entity_id=related_entity_id,
            related_entity_type=related_entity_type,
            created_at=self._now_fn(),
        )
        self._cache.create(NOTIFICATIONS, intent)
        logger.info(
            "notification %s for user %s: %s", intent.type, user_id, title
        )
        return intent

    def for_user(self, user_id: str) -> list[NotificationIntent]:
        """Newest first."""
        intents = [
            n for n in self._cache.get_all(NOTIFICATIONS) if n.user_id == user_id
        ]
        return sorted(intents, key=lambda n: n.created_at, reverse=True)

    def mark_read(self, notification_id: str) -> NotificationIntent:
        def _mark(intent: NotificationIntent) -> NotificationIntent:
            intent.read = True
            return intent

        return self._cache.mutate(NOTIFICATIONS, notification_id, _mark)
