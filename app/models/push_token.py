# file: models/push_token.py

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional

from app.services.push_transports import TransportKind


class PushTokenCreate(BaseModel):
    user_id: Optional[int] = None
    token: Optional[str] = None
    platform: Optional[str] = None
    transport_kind: Optional[TransportKind] = None


class PushTokenResponse(BaseModel):
    id: int
    user_id: int
    token: str
    transport_kind: TransportKind
    platform: Optional[str] = None
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
