# file: services/notification_store.py

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Notification, User
from app.services.errors import NotFoundError, ReferentialError

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


class NotificationStore:
    """In-app inbox: one row per delivered message per user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, user_id: int, title: str, body: str,
                     data: Optional[Dict[str, Any]] = None) -> Notification:
        if await self.db.get(User, user_id) is None:
            raise ReferentialError(f"user {user_id} does not exist")

        notification = Notification(user_id=user_id, title=title, body=body, data=data)
        self.db.add(notification)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ReferentialError(f"could not store notification for user {user_id}") from e
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        await self.db.refresh(notification)
        logger.info(f"Stored notification {notification.id} for user {user_id}")
        return notification

    async def list_for(self, user_id: int, limit: int = DEFAULT_LIST_LIMIT) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, notification_id: int) -> Notification:
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError(f"notification {notification_id} not found")
        if not notification.is_read:
            notification.is_read = True
            await self.db.commit()
            await self.db.refresh(notification)
        return notification
