# file: services/fanout.py

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import FanOutReport
from app.services.errors import ReferentialError
from app.services.notification_store import NotificationStore
from app.services.push_transports import (
    DeliveryStatus, DeliveryTicket, ExpoPushTransport, FcmPushTransport,
    PushTransport, TransportKind, classify_token,
)
from app.services.token_directory import TokenDirectory

logger = logging.getLogger(__name__)


def default_transports() -> Dict[TransportKind, PushTransport]:
    return {
        TransportKind.PROVIDER_A: ExpoPushTransport(),
        TransportKind.PROVIDER_B: FcmPushTransport(),
    }


class NotificationFanOut:
    """
    Pushes one message to every device of an audience and records it in each
    member's in-app inbox.

    The inbox is authoritative and push is best-effort: a record is written for
    every targeted user whether or not they have tokens and whether or not
    delivery worked. Only a failure to look up tokens escapes `notify`.
    """

    def __init__(self, db: AsyncSession, transports: Optional[Dict[TransportKind, PushTransport]] = None,
                 directory: Optional[TokenDirectory] = None, store: Optional[NotificationStore] = None):
        self.db = db
        self.transports = transports if transports is not None else default_transports()
        self.directory = directory or TokenDirectory(db)
        self.store = store or NotificationStore(db)

    async def notify(self, target_user_ids: Iterable[int], title: str, body: str,
                     data: Optional[Dict[str, Any]] = None) -> FanOutReport:
        targets = list(dict.fromkeys(target_user_ids))
        if not targets:
            return FanOutReport()

        push_tokens = await self.directory.tokens_for(targets)

        # Re-derive the provider from the token text; stored kinds may predate a rule change.
        groups: Dict[TransportKind, List[str]] = {kind: [] for kind in TransportKind}
        for push_token in push_tokens:
            groups[classify_token(push_token.token)].append(push_token.token)

        tickets = await self._dispatch(groups, title, body, data)
        await self._revoke_invalid(tickets)
        failures = await self._write_records(targets, title, body, data)

        report = FanOutReport(
            targeted=len(targets),
            tokens_attempted=len(tickets),
            delivered=sum(1 for t in tickets if t.status is DeliveryStatus.DELIVERED_OR_QUEUED),
            invalid=sum(1 for t in tickets if t.status is DeliveryStatus.INVALID_DESTINATION),
            transient_failures=sum(1 for t in tickets if t.status is DeliveryStatus.TRANSIENT_ERROR),
            record_write_failures=failures,
        )
        logger.info(f"Fan-out '{title}': {report.model_dump()}")
        return report

    async def _dispatch(self, groups: Dict[TransportKind, List[str]], title: str, body: str,
                        data: Optional[Dict[str, Any]]) -> List[DeliveryTicket]:
        calls = [(kind, tokens) for kind, tokens in groups.items() if tokens]
        if not calls:
            return []

        results = await asyncio.gather(
            *(self.transports[kind].send(tokens, title, body, data) for kind, tokens in calls),
            return_exceptions=True,
        )

        tickets: List[DeliveryTicket] = []
        for (kind, tokens), result in zip(calls, results):
            if isinstance(result, Exception):
                logger.error(f"{kind.value} transport raised instead of reporting: {result}", exc_info=result)
                tickets.extend(DeliveryTicket(t, DeliveryStatus.TRANSIENT_ERROR, str(result)) for t in tokens)
            elif isinstance(result, BaseException):
                raise result
            else:
                tickets.extend(result)
        return tickets

    async def _revoke_invalid(self, tickets: List[DeliveryTicket]) -> None:
        invalid = dict.fromkeys(t.token for t in tickets if t.status is DeliveryStatus.INVALID_DESTINATION)
        for token in invalid:
            try:
                await self.directory.revoke(token)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Could not revoke invalid token {token[:24]}...: {e}")

    async def _write_records(self, targets: List[int], title: str, body: str,
                             data: Optional[Dict[str, Any]]) -> List[int]:
        failures = []
        for user_id in targets:
            try:
                await self.store.append(user_id, title, body, data)
            except ReferentialError as e:
                logger.warning(f"Skipping notification for user {user_id}: {e}")
                failures.append(user_id)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Could not store notification for user {user_id}: {e}")
                failures.append(user_id)
        return failures


async def notify_after_commit(db: AsyncSession, target_user_ids: Iterable[int], title: str, body: str,
                              data: Optional[Dict[str, Any]] = None) -> Optional[FanOutReport]:
    """
    Runs a fan-out as a side effect of a marketplace write that is already
    committed. The write stands even if notifying fails; the caller gets None.
    """
    try:
        return await NotificationFanOut(db).notify(target_user_ids, title, body, data)
    except SQLAlchemyError:
        logger.exception(f"Notification fan-out '{title}' failed after commit")
        await db.rollback()
        return None
