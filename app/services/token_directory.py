# file: services/token_directory.py

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PushToken
from app.services.errors import ValidationError
from app.services.push_transports import TransportKind, classify_token

logger = logging.getLogger(__name__)


class TokenDirectory:
    """Push tokens registered per user, keyed globally by token value."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(self, user_id: Optional[int], token: Optional[str], platform: Optional[str] = None,
                       explicit_kind: Optional[TransportKind] = None) -> PushToken:
        if not user_id:
            raise ValidationError("user_id is required")
        if not token or not token.strip():
            raise ValidationError("token is required")
        token = token.strip()
        try:
            kind = TransportKind(explicit_kind) if explicit_kind else classify_token(token)
        except ValueError:
            raise ValidationError(f"unknown transport kind: {explicit_kind}")

        # Last writer wins: the device now belongs to whoever registered it most recently.
        insert = postgresql.insert if self.db.get_bind().dialect.name == "postgresql" else sqlite.insert
        stmt = insert(PushToken).values(user_id=user_id, token=token, transport_kind=kind.value, platform=platform)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PushToken.token],
            set_={
                "user_id": stmt.excluded.user_id,
                "transport_kind": stmt.excluded.transport_kind,
                "platform": stmt.excluded.platform,
                "updated_at": func.now(),
            },
        )
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        result = await self.db.execute(
            select(PushToken).where(PushToken.token == token).execution_options(populate_existing=True)
        )
        push_token = result.scalars().one()
        logger.info(f"Registered {kind.value} token for user {user_id} (platform={platform})")
        return push_token

    async def tokens_for(self, user_ids: Iterable[int]) -> List[PushToken]:
        ids = list(set(user_ids))
        if not ids:
            return []
        stmt = select(PushToken).where(PushToken.user_id.in_(ids)).order_by(PushToken.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def revoke(self, token: str) -> None:
        await self.db.execute(delete(PushToken).where(PushToken.token == token))
        await self.db.commit()
        logger.info(f"Revoked push token {token[:24]}...")
