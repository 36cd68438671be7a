# file: services/push_transports.py

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import firebase_admin
import httpx
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging

from app.config import (
    EXPO_PUSH_URL, EXPO_ACCESS_TOKEN, FIREBASE_CREDENTIALS,
    FIREBASE_PROJECT_ID, FIREBASE_CLIENT_EMAIL, FIREBASE_PRIVATE_KEY,
)
from app.services.errors import PermanentDestinationError, TransientTransportError

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[", "https://exp.host/")
EXPO_BATCH_SIZE = 100
FCM_BATCH_SIZE = 500


class TransportKind(str, Enum):
    PROVIDER_A = "provider_a"  # Expo push service
    PROVIDER_B = "provider_b"  # Firebase Cloud Messaging


class DeliveryStatus(str, Enum):
    DELIVERED_OR_QUEUED = "delivered_or_queued"
    INVALID_DESTINATION = "invalid_destination"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class DeliveryTicket:
    token: str
    status: DeliveryStatus
    detail: Optional[str] = None


def classify_token(token: str) -> TransportKind:
    """
    Decides which provider a push token belongs to from its text alone.
    Used both when a token is registered and again right before dispatch.
    """
    if token.strip().startswith(EXPO_TOKEN_PREFIXES):
        return TransportKind.PROVIDER_A
    return TransportKind.PROVIDER_B


def _chunks(items: Sequence[str], size: int):
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _ticket_from_error(token: str, error: Exception) -> DeliveryTicket:
    if isinstance(error, PermanentDestinationError):
        return DeliveryTicket(token, DeliveryStatus.INVALID_DESTINATION, str(error))
    return DeliveryTicket(token, DeliveryStatus.TRANSIENT_ERROR, str(error))


class PushTransport:
    """
    Base class for push providers. `send` never raises: every failure is
    turned into a ticket so one provider's outage can't abort the other.
    Subclasses implement `_dispatch`, returning one ticket per token in order.
    """
    kind: TransportKind
    name = "push"

    async def send(self, tokens: Sequence[str], title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> List[DeliveryTicket]:
        tickets: List[Optional[DeliveryTicket]] = [None] * len(tokens)
        accepted_positions = []
        for position, token in enumerate(tokens):
            if classify_token(token) is self.kind:
                accepted_positions.append(position)
            else:
                tickets[position] = DeliveryTicket(
                    token, DeliveryStatus.TRANSIENT_ERROR, f"not a {self.kind.value} token"
                )

        accepted = [tokens[p] for p in accepted_positions]
        if accepted:
            try:
                dispatched = await self._dispatch(accepted, title, body, data or {})
            except Exception as e:
                logger.error(f"{self.name}: dispatch of {len(accepted)} token(s) failed: {e}", exc_info=True)
                dispatched = [DeliveryTicket(t, DeliveryStatus.TRANSIENT_ERROR, str(e)) for t in accepted]
            for position, ticket in zip(accepted_positions, dispatched):
                tickets[position] = ticket

        return [t for t in tickets if t is not None]

    async def _dispatch(self, tokens: List[str], title: str, body: str,
                        data: Dict[str, Any]) -> List[DeliveryTicket]:
        raise NotImplementedError


class ExpoPushTransport(PushTransport):
    """Sends through Expo's push API, at most EXPO_BATCH_SIZE messages per request."""
    kind = TransportKind.PROVIDER_A
    name = "expo"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, push_url: str = EXPO_PUSH_URL,
                 access_token: Optional[str] = EXPO_ACCESS_TOKEN):
        self._client = client
        self.push_url = push_url
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Accept-Encoding': 'gzip, deflate',
            'Content-Type': 'application/json',
        }
        if self.access_token:
            headers['Authorization'] = f"Bearer {self.access_token}"
        return headers

    async def _dispatch(self, tokens, title, body, data):
        if self._client is not None:
            return await self._send_batches(self._client, tokens, title, body, data)
        async with httpx.AsyncClient(timeout=10) as client:
            return await self._send_batches(client, tokens, title, body, data)

    async def _send_batches(self, client: httpx.AsyncClient, tokens, title, body, data):
        tickets = []
        for batch in _chunks(tokens, EXPO_BATCH_SIZE):
            messages = [
                {
                    'to': token,
                    'sound': 'default',
                    'title': title,
                    'body': body,
                    'data': data,
                    'channelId': 'default',
                }
                for token in batch
            ]
            try:
                response = await client.post(self.push_url, json=messages, headers=self._headers())
                response.raise_for_status()
                payload = response.json()
                if payload.get("errors"):
                    raise TransientTransportError(f"Expo rejected the request: {payload['errors']}")
                tickets.extend(self._parse_tickets(batch, payload.get("data") or []))
            except httpx.HTTPStatusError as e:
                logger.warning(f"Expo responded with {e.response.status_code}: {e.response.text}")
                tickets.extend(DeliveryTicket(t, DeliveryStatus.TRANSIENT_ERROR, f"HTTP {e.response.status_code}")
                               for t in batch)
            except (httpx.RequestError, TransientTransportError, ValueError) as e:
                logger.warning(f"An error occurred while requesting Expo's push service: {e}")
                tickets.extend(DeliveryTicket(t, DeliveryStatus.TRANSIENT_ERROR, str(e)) for t in batch)
        return tickets

    @staticmethod
    def _parse_tickets(batch: List[str], raw_tickets: List[Dict[str, Any]]) -> List[DeliveryTicket]:
        tickets = []
        for index, token in enumerate(batch):
            if index >= len(raw_tickets):
                tickets.append(DeliveryTicket(token, DeliveryStatus.TRANSIENT_ERROR, "missing ticket"))
                continue
            raw = raw_tickets[index]
            if raw.get("status") == "ok":
                tickets.append(DeliveryTicket(token, DeliveryStatus.DELIVERED_OR_QUEUED, raw.get("id")))
                continue
            error_code = (raw.get("details") or {}).get("error")
            if error_code == "DeviceNotRegistered":
                error = PermanentDestinationError(raw.get("message") or error_code)
            else:
                error = TransientTransportError(raw.get("message") or error_code or "unknown Expo error")
            tickets.append(_ticket_from_error(token, error))
        return tickets


def get_firebase_app():
    """Initializes the Firebase Admin SDK once and returns the default app."""
    if not firebase_admin._apps:
        if FIREBASE_PROJECT_ID and FIREBASE_CLIENT_EMAIL and FIREBASE_PRIVATE_KEY:
            cred = credentials.Certificate({
                "type": "service_account",
                "project_id": FIREBASE_PROJECT_ID,
                "client_email": FIREBASE_CLIENT_EMAIL,
                "private_key": FIREBASE_PRIVATE_KEY.replace("\\n", "\n"),
                "token_uri": "https://oauth2.googleapis.com/token",
            })
        else:
            cred = credentials.Certificate(FIREBASE_CREDENTIALS)
        firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin SDK initialized.")
    return firebase_admin.get_app()


class FcmPushTransport(PushTransport):
    """Sends through Firebase Cloud Messaging as one multicast per FCM_BATCH_SIZE tokens."""
    kind = TransportKind.PROVIDER_B
    name = "fcm"

    PERMANENT_ERRORS = (
        messaging.UnregisteredError,
        messaging.SenderIdMismatchError,
    )

    def __init__(self, app=None):
        self._app = app

    @classmethod
    def _is_permanent(cls, error: Exception) -> bool:
        if isinstance(error, cls.PERMANENT_ERRORS):
            return True
        # INVALID_ARGUMENT also covers bad payloads; only a rejected token condemns the destination.
        return (isinstance(error, firebase_exceptions.InvalidArgumentError)
                and "registration token" in str(error).lower())

    @staticmethod
    def _stringify(data: Dict[str, Any]) -> Dict[str, str]:
        # FCM only accepts string values in the data payload.
        return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in data.items()}

    async def _dispatch(self, tokens, title, body, data):
        app = self._app or get_firebase_app()
        tickets = []
        for batch in _chunks(tokens, FCM_BATCH_SIZE):
            message = messaging.MulticastMessage(
                tokens=batch,
                notification=messaging.Notification(title=title, body=body),
                data=self._stringify(data),
            )
            try:
                response = await asyncio.to_thread(messaging.send_each_for_multicast, message, app=app)
            except Exception as e:
                logger.warning(f"FCM multicast of {len(batch)} token(s) failed: {e}")
                tickets.extend(DeliveryTicket(t, DeliveryStatus.TRANSIENT_ERROR, str(e)) for t in batch)
                continue

            for token, result in zip(batch, response.responses):
                if result.success:
                    tickets.append(DeliveryTicket(token, DeliveryStatus.DELIVERED_OR_QUEUED, result.message_id))
                elif self._is_permanent(result.exception):
                    tickets.append(_ticket_from_error(token, PermanentDestinationError(str(result.exception))))
                else:
                    tickets.append(_ticket_from_error(token, TransientTransportError(str(result.exception))))
        return tickets
