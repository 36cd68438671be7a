# file: controllers/notification.py

import logging
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.connection import get_db
from app.database.models import User
from app.models.notification import NotificationResponse, FanOutReport, SendTestNotificationRequest
from app.services.errors import NotFoundError
from app.services.fanout import NotificationFanOut
from app.services.notification_store import NotificationStore, DEFAULT_LIST_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{user_id}", response_model=List[NotificationResponse])
async def get_user_notifications(
        user_id: int,
        limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=DEFAULT_LIST_LIMIT),
        db: AsyncSession = Depends(get_db),
):
    """
    Retrieves a user's notifications, most recent first.
    """
    return await NotificationStore(db).list_for(user_id, limit)


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_as_read(notification_id: int, db: AsyncSession = Depends(get_db)):
    """
    Marks a specific notification as read. Marking it again is a no-op.
    """
    try:
        return await NotificationStore(db).mark_read(notification_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")


@router.post("/test", response_model=FanOutReport)
async def send_test_notification(payload: SendTestNotificationRequest, db: AsyncSession = Depends(get_db)):
    """
    Sends a test notification to one user through the regular fan-out.
    """
    if not await db.get(User, payload.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    try:
        return await NotificationFanOut(db).notify(
            [payload.user_id],
            "Test notification",
            payload.message or "This is a test notification!",
            {"type": "test", "timestamp": datetime.utcnow().isoformat()},
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Test notification for user {payload.user_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to send the notification")
