import logging
import time

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime

from app.database.connection import get_db
from app.database.models import User, PasswordResetCode
from app.models.user import (
    UserCreate, UserLogin, UserUpdate, UserResponse, Token,
    ForgotPasswordRequest, ResetPasswordRequest,
)
from app.services.email_service import send_reset_code_email
from app.services.errors import InvalidImageError
from app.services.storage import save_data_url
from app.utils.security import (
    hash_password, verify_password, create_access_token, generate_reset_code, reset_code_expiry,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


async def _get_user_or_404(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(user: UserCreate, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == user.email))
    if result.scalars().first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    photo_url = None
    if user.photo:
        try:
            photo_url = save_data_url(user.photo, "users", f"{user.email}_{int(time.time() * 1000)}")
        except InvalidImageError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    new_user = User(
        name=user.name,
        email=user.email,
        password=hash_password(user.password),
        phone=user.phone,
        photo_url=photo_url,
    )
    db.add(new_user)
    try:
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Database error while registering {user.email}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Registration failed due to database error")
    await db.refresh(new_user)
    return new_user


@router.post("/login", response_model=Token)
async def login(credentials: UserLogin, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == credentials.email))
    user = result.scalars().first()
    if not user or not verify_password(credentials.password, user.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    access_token = create_access_token(data={"sub": user.email, "uid": user.id})
    return {"access_token": access_token, "token_type": "bearer", "user": user}


@router.post("/forgot-password")
async def forgot_password(
        payload: ForgotPasswordRequest,
        background_tasks: BackgroundTasks,
        db: AsyncSession = Depends(get_db),
):
    """
    Stores a single-use, expiring reset code and emails it in the background.
    Any earlier unused codes for the same user are invalidated.
    """
    result = await db.execute(select(User).where(User.email == payload.email))
    user = result.scalars().first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email not registered")

    await db.execute(
        update(PasswordResetCode)
        .where(PasswordResetCode.user_id == user.id, PasswordResetCode.used == False)
        .values(used=True)
    )
    code = generate_reset_code()
    db.add(PasswordResetCode(user_id=user.id, code=code, expires_at=reset_code_expiry()))
    await db.commit()

    background_tasks.add_task(send_reset_code_email, user.email, code)
    return {"message": "Reset code sent"}


@router.post("/reset-password")
async def reset_password(payload: ResetPasswordRequest, db: AsyncSession = Depends(get_db)):
    stmt = (
        select(PasswordResetCode, User)
        .join(User, PasswordResetCode.user_id == User.id)
        .where(User.email == payload.email, PasswordResetCode.code == payload.code)
        .order_by(PasswordResetCode.id.desc())
    )
    row = (await db.execute(stmt)).first()
    if not row:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired code")

    reset_code, user = row
    if reset_code.used or reset_code.expires_at < datetime.utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired code")

    user.password = hash_password(payload.new_password)
    reset_code.used = True
    await db.commit()
    return {"message": "Password updated"}


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, db: AsyncSession = Depends(get_db)):
    return await _get_user_or_404(db, user_id)


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: int, user_update: UserUpdate, db: AsyncSession = Depends(get_db)):
    user = await _get_user_or_404(db, user_id)
    if user_update.name is not None:
        if not user_update.name.strip():
            raise HTTPException(status_code=400, detail="Name cannot be empty")
        user.name = user_update.name.strip()
    if user_update.phone is not None:
        if len(user_update.phone) != 10 or not user_update.phone.isdigit():
            raise HTTPException(status_code=400, detail="Phone must have exactly 10 digits")
        user.phone = user_update.phone
    if user_update.photo:
        try:
            user.photo_url = save_data_url(user_update.photo, "users", f"{user.id}_{int(time.time() * 1000)}")
        except InvalidImageError as e:
            raise HTTPException(status_code=400, detail=str(e))
    await db.commit()
    await db.refresh(user)
    return user


@router.put("/users/{user_id}/password")
async def change_password(user_id: int, payload: PasswordChangeRequest, db: AsyncSession = Depends(get_db)):
    user = await _get_user_or_404(db, user_id)
    if not verify_password(payload.current_password, user.password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    user.password = hash_password(payload.new_password)
    await db.commit()
    return {"message": "Password updated"}
