import pytest
import pytest_asyncio
import json
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import httpx
from firebase_admin import exceptions as firebase_exceptions, messaging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.database.models import Base, User, Notification, PushToken
from app.services.errors import NotFoundError, ReferentialError, ValidationError
from app.services.fanout import NotificationFanOut
from app.services.notification_store import NotificationStore
from app.services.push_transports import (
    DeliveryStatus, DeliveryTicket, ExpoPushTransport, FcmPushTransport,
    PushTransport, TransportKind, classify_token,
)
from app.services.token_directory import TokenDirectory

# --- Test DB Setup ---
DATABASE_URL = "sqlite+aiosqlite:///:memory:"
engine = create_async_engine(DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

EXPO_TOKEN = "ExponentPushToken[xyz]"
FCM_TOKEN = "fcm-opaque-string"


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with TestingSessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def make_users(db_session: AsyncSession, *user_ids: int):
    for user_id in user_ids:
        db_session.add(User(id=user_id, name=f"User {user_id}", email=f"user{user_id}@example.com",
                            password="hashed", phone="5512345678"))
    await db_session.commit()


async def notifications_for(db_session: AsyncSession, user_id: int):
    result = await db_session.execute(select(Notification).where(Notification.user_id == user_id))
    return result.scalars().all()


class RecordingTransport(PushTransport):
    """Transport double that records each dispatch and answers with preset statuses."""

    def __init__(self, kind, statuses=None, error=None):
        self.kind = kind
        self.name = f"recording-{kind.value}"
        self.statuses = statuses or {}
        self.error = error
        self.calls = []

    async def _dispatch(self, tokens, title, body, data):
        self.calls.append(list(tokens))
        if self.error:
            raise self.error
        return [DeliveryTicket(t, self.statuses.get(t, DeliveryStatus.DELIVERED_OR_QUEUED)) for t in tokens]


def transports(expo=None, fcm=None):
    return {
        TransportKind.PROVIDER_A: expo or RecordingTransport(TransportKind.PROVIDER_A),
        TransportKind.PROVIDER_B: fcm or RecordingTransport(TransportKind.PROVIDER_B),
    }


###############################################################
# 1. Token classification
###############################################################

@pytest.mark.parametrize("token, kind", [
    ("ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]", TransportKind.PROVIDER_A),
    ("ExpoPushToken[abc]", TransportKind.PROVIDER_A),
    ("https://exp.host/--/api/v2/push/abc", TransportKind.PROVIDER_A),
    ("fcm-opaque-string", TransportKind.PROVIDER_B),
    ("dXNlcjpwYXNz:APA91bH-example", TransportKind.PROVIDER_B),
    ("exponentpushtoken[lowercase]", TransportKind.PROVIDER_B),
])
def test_classify_token(token, kind):
    assert classify_token(token) is kind


###############################################################
# 2. Expo transport
###############################################################

def expo_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_expo_transport_maps_tickets():
    def handler(request: httpx.Request) -> httpx.Response:
        messages = json.loads(request.content)
        assert [m["to"] for m in messages] == ["ExponentPushToken[ok]", "ExponentPushToken[gone]",
                                               "ExponentPushToken[busy]"]
        assert messages[0]["title"] == "Sold"
        return httpx.Response(200, json={"data": [
            {"status": "ok", "id": "ticket-1"},
            {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
            {"status": "error", "message": "slow down", "details": {"error": "MessageRateExceeded"}},
        ]})

    async with expo_client(handler) as client:
        transport = ExpoPushTransport(client=client)
        tickets = await transport.send(
            ["ExponentPushToken[ok]", "ExponentPushToken[gone]", "ExponentPushToken[busy]"],
            "Sold", "Item X sold",
        )

    assert [t.status for t in tickets] == [
        DeliveryStatus.DELIVERED_OR_QUEUED,
        DeliveryStatus.INVALID_DESTINATION,
        DeliveryStatus.TRANSIENT_ERROR,
    ]


@pytest.mark.asyncio
async def test_expo_transport_batches_at_one_hundred():
    batch_sizes = []

    def handler(request: httpx.Request) -> httpx.Response:
        messages = json.loads(request.content)
        batch_sizes.append(len(messages))
        return httpx.Response(200, json={"data": [{"status": "ok", "id": str(i)} for i in range(len(messages))]})

    tokens = [f"ExponentPushToken[{i}]" for i in range(250)]
    async with expo_client(handler) as client:
        tickets = await ExpoPushTransport(client=client).send(tokens, "t", "b")

    assert batch_sizes == [100, 100, 50]
    assert len(tickets) == 250
    assert all(t.status is DeliveryStatus.DELIVERED_OR_QUEUED for t in tickets)


@pytest.mark.asyncio
async def test_expo_transport_http_failure_marks_batch_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    async with expo_client(handler) as client:
        tickets = await ExpoPushTransport(client=client).send(["ExponentPushToken[a]", "ExponentPushToken[b]"],
                                                              "t", "b")

    assert [t.status for t in tickets] == [DeliveryStatus.TRANSIENT_ERROR] * 2


@pytest.mark.asyncio
async def test_expo_transport_network_error_never_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    async with expo_client(handler) as client:
        tickets = await ExpoPushTransport(client=client).send(["ExponentPushToken[a]"], "t", "b")

    assert tickets[0].status is DeliveryStatus.TRANSIENT_ERROR


@pytest.mark.asyncio
async def test_expo_transport_does_not_send_foreign_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with expo_client(handler) as client:
        tickets = await ExpoPushTransport(client=client).send([FCM_TOKEN], "t", "b")

    assert tickets == [DeliveryTicket(FCM_TOKEN, DeliveryStatus.TRANSIENT_ERROR, "not a provider_a token")]


###############################################################
# 3. FCM transport
###############################################################

@pytest.mark.asyncio
async def test_fcm_transport_maps_multicast_responses(mocker):
    responses = [
        MagicMock(success=True, message_id="m-1", exception=None),
        MagicMock(success=False, exception=messaging.UnregisteredError("unregistered")),
        MagicMock(success=False, exception=firebase_exceptions.UnavailableError("try later")),
    ]
    send = mocker.patch("app.services.push_transports.messaging.send_each_for_multicast",
                        return_value=MagicMock(responses=responses))

    tickets = await FcmPushTransport(app=MagicMock()).send(["fcm-1", "fcm-2", "fcm-3"], "t", "b",
                                                           {"listing_id": 5})

    message = send.call_args.args[0]
    assert message.tokens == ["fcm-1", "fcm-2", "fcm-3"]
    assert message.data == {"listing_id": "5"}
    assert [t.status for t in tickets] == [
        DeliveryStatus.DELIVERED_OR_QUEUED,
        DeliveryStatus.INVALID_DESTINATION,
        DeliveryStatus.TRANSIENT_ERROR,
    ]


@pytest.mark.asyncio
async def test_fcm_transport_whole_call_failure_is_transient(mocker):
    mocker.patch("app.services.push_transports.messaging.send_each_for_multicast",
                 side_effect=firebase_exceptions.UnauthenticatedError("bad credentials"))

    tickets = await FcmPushTransport(app=MagicMock()).send(["fcm-1", "fcm-2"], "t", "b")

    assert [t.status for t in tickets] == [DeliveryStatus.TRANSIENT_ERROR] * 2


@pytest.mark.asyncio
async def test_fcm_invalid_argument_revokes_only_rejected_tokens(mocker):
    responses = [
        MagicMock(success=False, exception=firebase_exceptions.InvalidArgumentError(
            "The registration token is not a valid FCM registration token")),
        MagicMock(success=False, exception=firebase_exceptions.InvalidArgumentError(
            "Request contains an invalid argument: data payload too large")),
    ]
    mocker.patch("app.services.push_transports.messaging.send_each_for_multicast",
                 return_value=MagicMock(responses=responses))

    tickets = await FcmPushTransport(app=MagicMock()).send(["fcm-bad", "fcm-fine"], "t", "b")

    assert [t.status for t in tickets] == [DeliveryStatus.INVALID_DESTINATION, DeliveryStatus.TRANSIENT_ERROR]


@pytest.mark.asyncio
async def test_fcm_transport_uninitialized_sdk_is_transient(mocker):
    mocker.patch("app.services.push_transports.get_firebase_app", side_effect=FileNotFoundError("no key"))

    tickets = await FcmPushTransport().send(["fcm-1"], "t", "b")

    assert tickets[0].status is DeliveryStatus.TRANSIENT_ERROR


###############################################################
# 4. Token directory
###############################################################

@pytest.mark.asyncio
async def test_register_classifies_and_upserts(db_session: AsyncSession):
    await make_users(db_session, 1, 2)
    directory = TokenDirectory(db_session)

    first = await directory.register(1, EXPO_TOKEN, "ios")
    assert first.transport_kind == TransportKind.PROVIDER_A.value

    moved = await directory.register(2, EXPO_TOKEN, "android")
    assert moved.id == first.id
    assert moved.user_id == 2
    assert moved.platform == "android"
    assert await directory.tokens_for({1}) == []
    assert [t.token for t in await directory.tokens_for({2})] == [EXPO_TOKEN]


@pytest.mark.asyncio
async def test_register_takes_over_token_committed_concurrently(db_session: AsyncSession, monkeypatch):
    await make_users(db_session, 1, 2)
    directory = TokenDirectory(db_session)
    execute = db_session.execute
    raced = []

    async def execute_after_competing_commit(*args, **kwargs):
        if not raced:
            raced.append(True)
            async with TestingSessionLocal() as other:
                other.add(PushToken(user_id=2, token="fcm-race", transport_kind="provider_b"))
                await other.commit()
        return await execute(*args, **kwargs)

    monkeypatch.setattr(db_session, "execute", execute_after_competing_commit)

    token = await directory.register(1, "fcm-race", "android")

    assert token.user_id == 1
    assert token.platform == "android"
    assert [t.user_id for t in await directory.tokens_for({1, 2})] == [1]


@pytest.mark.asyncio
async def test_register_honours_explicit_kind(db_session: AsyncSession):
    await make_users(db_session, 1)
    token = await TokenDirectory(db_session).register(1, "custom-token", "web", TransportKind.PROVIDER_A)
    assert token.transport_kind == "provider_a"


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id, token", [(None, EXPO_TOKEN), (1, None), (1, "   ")])
async def test_register_requires_user_and_token(db_session: AsyncSession, user_id, token):
    with pytest.raises(ValidationError):
        await TokenDirectory(db_session).register(user_id, token, "ios")


@pytest.mark.asyncio
async def test_tokens_for_unknown_user_is_empty(db_session: AsyncSession):
    assert await TokenDirectory(db_session).tokens_for({404}) == []


@pytest.mark.asyncio
async def test_revoke_is_idempotent(db_session: AsyncSession):
    await make_users(db_session, 1)
    directory = TokenDirectory(db_session)
    await directory.register(1, FCM_TOKEN, "android")

    await directory.revoke(FCM_TOKEN)
    await directory.revoke(FCM_TOKEN)

    assert await directory.tokens_for({1}) == []


###############################################################
# 5. Notification store
###############################################################

@pytest.mark.asyncio
async def test_append_unknown_user_raises_referential_error(db_session: AsyncSession):
    with pytest.raises(ReferentialError):
        await NotificationStore(db_session).append(99, "t", "b")


@pytest.mark.asyncio
async def test_list_for_returns_newest_first_with_limit(db_session: AsyncSession):
    await make_users(db_session, 1)
    store = NotificationStore(db_session)
    for i in range(3):
        await store.append(1, f"title {i}", "body", {"i": i})

    records = await store.list_for(1, limit=2)

    assert [r.title for r in records] == ["title 2", "title 1"]
    assert records[0].data == {"i": 2}


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(db_session: AsyncSession):
    await make_users(db_session, 1)
    store = NotificationStore(db_session)
    record = await store.append(1, "t", "b")

    first = await store.mark_read(record.id)
    second = await store.mark_read(record.id)

    assert first.is_read is True
    assert second.is_read is True


@pytest.mark.asyncio
async def test_mark_read_unknown_record(db_session: AsyncSession):
    with pytest.raises(NotFoundError):
        await NotificationStore(db_session).mark_read(12345)


###############################################################
# 6. Fan-out engine
###############################################################

@pytest.mark.asyncio
async def test_notify_empty_audience_is_a_noop(db_session: AsyncSession):
    directory = MagicMock(spec=TokenDirectory)
    store = MagicMock(spec=NotificationStore)
    engine_ = NotificationFanOut(db_session, transports(), directory=directory, store=store)

    report = await engine_.notify([], "t", "b")

    assert report.model_dump() == {"targeted": 0, "tokens_attempted": 0, "delivered": 0, "invalid": 0,
                                   "transient_failures": 0, "record_write_failures": []}
    directory.tokens_for.assert_not_called()
    store.append.assert_not_called()


@pytest.mark.asyncio
async def test_notify_single_expo_user(db_session: AsyncSession):
    await make_users(db_session, 7)
    await TokenDirectory(db_session).register(7, EXPO_TOKEN, "ios")
    senders = transports()

    report = await NotificationFanOut(db_session, senders).notify([7], "Sold", "Item X sold")

    assert senders[TransportKind.PROVIDER_A].calls == [[EXPO_TOKEN]]
    assert senders[TransportKind.PROVIDER_B].calls == []
    records = await notifications_for(db_session, 7)
    assert len(records) == 1
    assert records[0].is_read is False
    assert report.targeted == 1
    assert report.delivered == 1


@pytest.mark.asyncio
async def test_notify_users_without_tokens_still_get_records(db_session: AsyncSession):
    await make_users(db_session, 3, 4, 5)
    senders = transports()

    report = await NotificationFanOut(db_session, senders).notify([3, 4, 5], "Test", "body")

    assert senders[TransportKind.PROVIDER_A].calls == []
    assert senders[TransportKind.PROVIDER_B].calls == []
    assert report.tokens_attempted == 0
    assert report.targeted == 3
    for user_id in (3, 4, 5):
        assert len(await notifications_for(db_session, user_id)) == 1


@pytest.mark.asyncio
async def test_notify_one_record_per_unique_user_with_many_tokens(db_session: AsyncSession):
    await make_users(db_session, 1, 2)
    directory = TokenDirectory(db_session)
    await directory.register(1, "ExponentPushToken[a]", "ios")
    await directory.register(1, "fcm-a", "android")
    await directory.register(1, "fcm-b", "web")
    senders = transports()

    report = await NotificationFanOut(db_session, senders).notify([1, 1, 2], "t", "b", {"k": "v"})

    assert report.targeted == 2
    assert report.tokens_attempted == 3
    assert senders[TransportKind.PROVIDER_B].calls == [["fcm-a", "fcm-b"]]
    assert len(await notifications_for(db_session, 1)) == 1
    assert len(await notifications_for(db_session, 2)) == 1


@pytest.mark.asyncio
async def test_notify_reclassifies_tokens_from_their_text(db_session: AsyncSession):
    await make_users(db_session, 1)
    # Stored with a stale kind; dispatch must follow the token text.
    db_session.add(PushToken(user_id=1, token=EXPO_TOKEN, transport_kind="provider_b", platform="ios"))
    await db_session.commit()
    senders = transports()

    await NotificationFanOut(db_session, senders).notify([1], "t", "b")

    assert senders[TransportKind.PROVIDER_A].calls == [[EXPO_TOKEN]]
    assert senders[TransportKind.PROVIDER_B].calls == []


@pytest.mark.asyncio
async def test_provider_a_outage_does_not_block_provider_b(db_session: AsyncSession):
    await make_users(db_session, 1, 2)
    directory = TokenDirectory(db_session)
    await directory.register(1, EXPO_TOKEN, "ios")
    await directory.register(2, FCM_TOKEN, "android")
    senders = transports(expo=RecordingTransport(TransportKind.PROVIDER_A, error=httpx.ConnectError("down")))

    report = await NotificationFanOut(db_session, senders).notify([1, 2], "t", "b")

    assert senders[TransportKind.PROVIDER_B].calls == [[FCM_TOKEN]]
    assert report.delivered == 1
    assert report.transient_failures == 1
    assert report.record_write_failures == []


@pytest.mark.asyncio
async def test_raising_transport_is_isolated(db_session: AsyncSession):
    await make_users(db_session, 1, 2)
    directory = TokenDirectory(db_session)
    await directory.register(1, EXPO_TOKEN, "ios")
    await directory.register(2, FCM_TOKEN, "android")
    broken = MagicMock()
    broken.send = AsyncMock(side_effect=RuntimeError("boom"))
    fcm = RecordingTransport(TransportKind.PROVIDER_B)

    report = await NotificationFanOut(db_session, {TransportKind.PROVIDER_A: broken,
                                                   TransportKind.PROVIDER_B: fcm}).notify([1, 2], "t", "b")

    assert fcm.calls == [[FCM_TOKEN]]
    assert report.transient_failures == 1
    assert report.delivered == 1


@pytest.mark.asyncio
async def test_invalid_destination_revokes_token(db_session: AsyncSession):
    await make_users(db_session, 1)
    directory = TokenDirectory(db_session)
    await directory.register(1, "fcm-dead", "android")
    await directory.register(1, "fcm-alive", "android")
    senders = transports(fcm=RecordingTransport(
        TransportKind.PROVIDER_B, statuses={"fcm-dead": DeliveryStatus.INVALID_DESTINATION}
    ))

    report = await NotificationFanOut(db_session, senders).notify([1], "t", "b")

    assert report.invalid == 1
    assert [t.token for t in await directory.tokens_for({1})] == ["fcm-alive"]


@pytest.mark.asyncio
async def test_revoke_failure_is_logged_not_raised(db_session: AsyncSession):
    await make_users(db_session, 1)
    directory = TokenDirectory(db_session)
    await directory.register(1, "fcm-dead", "android")
    senders = transports(fcm=RecordingTransport(
        TransportKind.PROVIDER_B, statuses={"fcm-dead": DeliveryStatus.INVALID_DESTINATION}
    ))
    from sqlalchemy.exc import OperationalError
    directory.revoke = AsyncMock(side_effect=OperationalError("DELETE", {}, Exception("locked")))

    report = await NotificationFanOut(db_session, senders, directory=directory).notify([1], "t", "b")

    assert report.invalid == 1
    assert len(await notifications_for(db_session, 1)) == 1


@pytest.mark.asyncio
async def test_record_write_failure_does_not_stop_other_users(db_session: AsyncSession):
    await make_users(db_session, 1, 3)

    report = await NotificationFanOut(db_session, transports()).notify([1, 2, 3], "t", "b")

    assert report.targeted == 3
    assert report.record_write_failures == [2]
    assert len(await notifications_for(db_session, 1)) == 1
    assert len(await notifications_for(db_session, 3)) == 1


@pytest.mark.asyncio
async def test_token_lookup_failure_propagates(db_session: AsyncSession):
    from sqlalchemy.exc import OperationalError
    directory = MagicMock(spec=TokenDirectory)
    directory.tokens_for = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))

    with pytest.raises(OperationalError):
        await NotificationFanOut(db_session, transports(), directory=directory).notify([1], "t", "b")


###############################################################
# 7. Storage and security helpers
###############################################################
from app.services import storage
from app.services.errors import InvalidImageError
from app.utils.security import hash_password, verify_password, generate_reset_code


def test_save_data_url_writes_file(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "UPLOAD_DIR", tmp_path)

    url = storage.save_data_url("data:image/png;base64,aGVsbG8=", "listings/1", "photo_0")

    assert url == "/uploads/listings/1/photo_0.png"
    assert (tmp_path / "listings" / "1" / "photo_0.png").read_bytes() == b"hello"


@pytest.mark.parametrize("data_url", ["not-an-image", "data:text/plain;base64,aGVsbG8=",
                                      "data:image/png;base64,***"])
def test_save_data_url_rejects_bad_payloads(tmp_path, monkeypatch, data_url):
    monkeypatch.setattr(storage, "UPLOAD_DIR", tmp_path)
    with pytest.raises(InvalidImageError):
        storage.save_data_url(data_url, "users", "x")


def test_hash_and_verify_password():
    hashed = hash_password("my_correct_password")
    assert verify_password("my_correct_password", hashed) is True
    assert verify_password("wrong_password", hashed) is False


def test_reset_code_is_six_digits():
    code = generate_reset_code()
    assert len(code) == 6 and code.isdigit()
