import asyncio
import uuid

import pytest
from starlette.websockets import WebSocketState

import relay as relay_module
from database import SessionLocal
from errors import InternalError
from models import Conversation, Message, User
from notifier import BridgeError, LocalBroker, Notification, QueueSubscription, channel_name
from relay import RelaySession, RelayState


class FakeSocket:
    def __init__(self, fail_send=False):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.accepted = False
        self.closed = False
        self.denial = None
        self.fail_send = fail_send
        self.scope = {"type": "websocket", "extensions": {"websocket.http.response": {}}}
        self.application_state = WebSocketState.CONNECTING
        self.client_state = WebSocketState.CONNECTING

    async def accept(self):
        self.accepted = True
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def receive(self):
        message = await self.incoming.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, text):
        if self.fail_send:
            raise RuntimeError("connection reset")
        self.sent.append(text)

    async def close(self, code=1000):
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED

    async def send_denial_response(self, response):
        self.denial = response

    def push_text(self, text):
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data):
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_disconnect(self):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})


async def wait_until(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def pair(db):
    alice = User(username="alice", email="alice@example.com", password_hash="x")
    bob = User(username="bob", email="bob@example.com", password_hash="x")
    db.add_all([alice, bob])
    db.commit()
    conversation = Conversation(user_id_1=min(alice.id, bob.id), user_id_2=max(alice.id, bob.id))
    db.add(conversation)
    db.commit()
    return alice.id, bob.id, conversation.id


async def start(socket, broker, user_id, conversation_id):
    session = RelaySession(socket, broker, SessionLocal, user_id)
    assert await session.authorize(str(conversation_id))
    task = asyncio.create_task(session.run())
    await wait_until(lambda: socket.accepted)
    return session, task


@pytest.mark.asyncio
async def test_relays_peer_messages_and_stores_own(pair, db):
    alice_id, bob_id, conversation_id = pair
    broker = LocalBroker()
    socket = FakeSocket()
    session, task = await start(socket, broker, alice_id, conversation_id)
    assert session.state is RelayState.ACTIVE

    socket.push_text("   ")
    socket.push_bytes(b"\x00")
    socket.push_text("hello")
    await broker.publish(conversation_id, Notification(author_user_id=bob_id, content="from bob"))
    await wait_until(lambda: socket.sent == ["from bob"])

    socket.push_disconnect()
    await asyncio.wait_for(task, 2)

    assert session.state is RelayState.CLOSED
    assert socket.sent == ["from bob"]
    assert broker._subscribers == {}
    stored = db.query(Message).all()
    assert [(m.content, m.user_sent_id) for m in stored] == [("hello", alice_id)]


@pytest.mark.asyncio
async def test_stream_end_closes_session(pair):
    alice_id, _, conversation_id = pair
    broker = LocalBroker()
    socket = FakeSocket()
    session, task = await start(socket, broker, alice_id, conversation_id)

    await broker.close()
    await asyncio.wait_for(task, 2)

    assert session.state is RelayState.CLOSED
    assert socket.closed


@pytest.mark.asyncio
async def test_bridge_error_closes_session(pair):
    alice_id, _, conversation_id = pair
    broker = LocalBroker()
    socket = FakeSocket()
    session, task = await start(socket, broker, alice_id, conversation_id)

    subscription = next(iter(broker._subscribers[channel_name(conversation_id)]))
    subscription.end(BridgeError("listener connection lost"))
    await asyncio.wait_for(task, 2)

    assert session.state is RelayState.CLOSED
    assert socket.closed
    assert broker._subscribers == {}


@pytest.mark.asyncio
async def test_send_failure_closes_session(pair):
    alice_id, bob_id, conversation_id = pair
    broker = LocalBroker()
    socket = FakeSocket(fail_send=True)
    session, task = await start(socket, broker, alice_id, conversation_id)

    await broker.publish(conversation_id, Notification(author_user_id=bob_id, content="hi"))
    await asyncio.wait_for(task, 2)

    assert session.state is RelayState.CLOSED
    assert broker._subscribers == {}


@pytest.mark.asyncio
async def test_storage_failure_closes_session(pair, monkeypatch):
    alice_id, _, conversation_id = pair

    def broken_append(*args, **kwargs):
        raise InternalError("Failed to persist message")

    monkeypatch.setattr(relay_module, "append_message", broken_append)
    broker = LocalBroker()
    socket = FakeSocket()
    session, task = await start(socket, broker, alice_id, conversation_id)

    socket.push_text("hello")
    await asyncio.wait_for(task, 2)

    assert session.state is RelayState.CLOSED
    assert socket.closed
    assert broker._subscribers == {}


@pytest.mark.asyncio
async def test_subscribe_failure_rejects_upgrade(pair):
    alice_id, _, conversation_id = pair

    class UnavailableBroker(LocalBroker):
        async def subscribe(self, conversation_id):
            raise BridgeError("no listener connection")

    socket = FakeSocket()
    session = RelaySession(socket, UnavailableBroker(), SessionLocal, alice_id)
    assert await session.authorize(str(conversation_id))
    await session.run()

    assert not socket.accepted
    assert socket.denial.status_code == 500
    assert session.state is RelayState.CLOSED


@pytest.mark.asyncio
async def test_authorize_rejections(pair):
    alice_id, _, conversation_id = pair

    cases = [(None, 400), ("abc", 400), (str(uuid.uuid4()), 403)]
    for raw, status_code in cases:
        socket = FakeSocket()
        session = RelaySession(socket, LocalBroker(), SessionLocal, alice_id)
        assert not await session.authorize(raw)
        assert socket.denial.status_code == status_code
        assert session.state is RelayState.CLOSED


@pytest.mark.asyncio
async def test_reject_without_denial_extension(pair):
    alice_id, _, _ = pair
    socket = FakeSocket()
    socket.scope["extensions"] = {}
    session = RelaySession(socket, LocalBroker(), SessionLocal, alice_id)

    assert not await session.authorize(None)
    assert socket.denial is None
    assert socket.closed


@pytest.mark.asyncio
async def test_queue_subscription_close_is_idempotent():
    closed = []
    subscription = QueueSubscription("conversation_x", on_close=closed.append)
    await subscription.close()
    await subscription.close()
    assert closed == [subscription]


@pytest.mark.asyncio
async def test_cancelled_session_still_releases_resources(pair):
    alice_id, _, conversation_id = pair
    broker = LocalBroker()
    socket = FakeSocket()
    session, task = await start(socket, broker, alice_id, conversation_id)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.state is RelayState.CLOSED
    assert socket.closed
    assert broker._subscribers == {}
