"""In-app notification writer.

Notifications are plain rows read by the UI; the engine writes them for
NOTIFICATION steps and for approval lifecycle events.
"""

from typing import Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import NotificationType
from db.models.notification import Notification

logger = structlog.get_logger(__name__)


class NotificationService:
    """Creates Notification rows. Does not commit; callers own the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        organization_id: str,
        user_id: str,
        title: str,
        message: str = "",
        notification_type: str = NotificationType.WORKFLOW.value,
        details: Optional[dict] = None,
    ) -> Notification:
        notification = Notification(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            details=details or {},
        )
        self.db.add(notification)
        await self.db.flush()
        return notification

    async def notify_many(
        self,
        organization_id: str,
        user_ids: Iterable[str],
        title: str,
        message: str = "",
        notification_type: str = NotificationType.WORKFLOW.value,
        details: Optional[dict] = None,
    ) -> list[Notification]:
        """One notification per distinct recipient, in the given order."""
        recipients = list(dict.fromkeys(uid for uid in user_ids if uid))
        notifications = [
            Notification(
                organization_id=organization_id,
                user_id=user_id,
                title=title,
                message=message,
                notification_type=notification_type,
                details=details or {},
            )
            for user_id in recipients
        ]
        self.db.add_all(notifications)
        await self.db.flush()
        logger.debug(
            "Notifications created",
            notification_type=notification_type,
            recipients=len(notifications),
        )
        return notifications
