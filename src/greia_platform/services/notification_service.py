"""In-app notification records."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select

from greia_platform.domain.models import Notification
from greia_platform.infra.database import async_session

logger = logging.getLogger(__name__)


class NotificationService:
    """Persist notifications for users, each in its own transaction."""

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> Notification:
        async with self.session_factory() as db:
            notification = Notification(
                id=str(uuid.uuid4()),
                user_id=user_id,
                type=type,
                title=title,
                content=content,
                data=metadata,
            )
            db.add(notification)
            await db.commit()
        logger.info("Notification %s (%s) created for user %s", notification.id, type, user_id)
        return notification

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        async with self.session_factory() as db:
            query = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                query = query.where(Notification.read.is_(False))
            result = await db.execute(query.order_by(Notification.created_at.desc()))
            return list(result.scalars().all())
