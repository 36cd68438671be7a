from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.connection import get_db
from app.database.models import User
from app.models.push_token import PushTokenCreate, PushTokenResponse
from app.services.errors import ValidationError
from app.services.token_directory import TokenDirectory

router = APIRouter()


@router.post("/", response_model=PushTokenResponse)
async def register_push_token(payload: PushTokenCreate, db: AsyncSession = Depends(get_db)):
    """
    Registers a device token for a user. Re-registering a token moves it to the
    new owner. The provider is inferred from the token unless given explicitly.
    """
    if payload.user_id and not await db.get(User, payload.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    try:
        return await TokenDirectory(db).register(
            payload.user_id, payload.token, payload.platform, payload.transport_kind
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{token:path}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_push_token(token: str, db: AsyncSession = Depends(get_db)):
    await TokenDirectory(db).revoke(token)
    return
