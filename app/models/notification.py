# file: models/notification.py

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class NotificationBase(BaseModel):
    title: str
    body: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class NotificationResponse(NotificationBase):
    id: int
    user_id: int
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendTestNotificationRequest(BaseModel):
    user_id: int
    message: Optional[str] = None


class FanOutReport(BaseModel):
    targeted: int = 0
    tokens_attempted: int = 0
    delivered: int = 0
    invalid: int = 0
    transient_failures: int = 0
    record_write_failures: List[int] = Field(default_factory=list)
