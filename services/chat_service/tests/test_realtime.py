import asyncio
import json

import pytest
from starlette.websockets import WebSocketDisconnect

import main
from auth import create_access_token
from conftest import create_conversation
from realtime import ConnectionManager, LocalBroadcaster, RedisBroadcaster, conversation_room, user_room


class FakeSocket:
    def __init__(self, broken=False):
        self.accepted = False
        self.sent = []
        self.broken = broken

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


class FakeRedis:
    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))


class FlakyRedis(FakeRedis):
    """Hands out subscriptions; the first one loses its connection straight away."""

    def __init__(self, envelope):
        super().__init__()
        self.envelope = envelope
        self.subscriptions = 0
        self.closed = 0

    def pubsub(self):
        return FakePubSub(self)


class FakePubSub:
    def __init__(self, redis):
        self.redis = redis
        self.attempt = 0

    async def subscribe(self, channel):
        self.redis.subscriptions += 1
        self.attempt = self.redis.subscriptions

    async def listen(self):
        if self.attempt == 1:
            raise ConnectionError("Connection closed by server.")
        yield {"type": "subscribe", "data": 1}
        yield {"type": "message", "data": self.redis.envelope}
        await asyncio.Event().wait()

    async def aclose(self):
        self.redis.closed += 1


def test_rooms_deliver_only_to_joined_sockets():
    manager = ConnectionManager()
    alice, binh = FakeSocket(), FakeSocket()

    async def scenario():
        await manager.connect(alice, 1)
        await manager.connect(binh, 2)
        manager.join(alice, conversation_room(10))
        await manager.emit(conversation_room(10), "chat:new_message", {"conversation_id": 10})
        await manager.emit(user_room(2), "chat:new_conversation", {"conversation_id": 11})

    asyncio.run(scenario())
    assert alice.accepted
    assert alice.sent == [{"event": "chat:new_message", "data": {"conversation_id": 10}}]
    assert binh.sent == [{"event": "chat:new_conversation", "data": {"conversation_id": 11}}]


def test_failed_socket_is_dropped_from_every_room():
    manager = ConnectionManager()
    dead = FakeSocket(broken=True)

    async def scenario():
        await manager.connect(dead, 1)
        manager.join(dead, conversation_room(10))
        await manager.emit(conversation_room(10), "chat:typing", {"conversation_id": 10})

    asyncio.run(scenario())
    assert manager.rooms == {}


def test_leave_and_disconnect():
    manager = ConnectionManager()
    socket = FakeSocket()

    async def scenario():
        await manager.connect(socket, 1)
        manager.join(socket, conversation_room(5))
        manager.leave(socket, conversation_room(5))
        await manager.emit(conversation_room(5), "chat:typing", {})

    asyncio.run(scenario())
    assert socket.sent == []
    assert set(manager.rooms) == {user_room(1)}
    manager.disconnect(socket)
    assert manager.rooms == {}


def test_local_broadcaster_delivers_directly():
    manager = ConnectionManager()
    socket = FakeSocket()

    async def scenario():
        await manager.connect(socket, 3)
        await LocalBroadcaster(manager).emit(user_room(3), "chat:conversation_deleted", {"conversation_id": 1})

    asyncio.run(scenario())
    assert socket.sent[0]["event"] == "chat:conversation_deleted"


def test_redis_broadcaster_publishes_and_relays():
    manager = ConnectionManager()
    redis = FakeRedis()
    broadcaster = RedisBroadcaster(redis, manager, channel="chat:test")
    socket = FakeSocket()

    async def scenario():
        await manager.connect(socket, 1)
        await broadcaster.emit(user_room(1), "chat:new_conversation", {"conversation_id": 4})
        for _, raw in redis.published:
            await broadcaster.relay(raw)
        await broadcaster.relay("not json")
        await broadcaster.relay(json.dumps({"room": user_room(1)}))

    asyncio.run(scenario())
    channel, raw = redis.published[0]
    assert channel == "chat:test"
    assert json.loads(raw) == {"room": "user:1", "event": "chat:new_conversation", "data": {"conversation_id": 4}}
    assert socket.sent == [{"event": "chat:new_conversation", "data": {"conversation_id": 4}}]


def test_redis_relay_resubscribes_after_connection_error():
    manager = ConnectionManager()
    socket = FakeSocket()
    envelope = json.dumps({"room": user_room(1), "event": "chat:new_message", "data": {"conversation_id": 4}})
    redis = FlakyRedis(envelope)
    broadcaster = RedisBroadcaster(redis, manager, channel="chat:test", retry_delay=0.01)

    async def scenario():
        await manager.connect(socket, 1)
        task = asyncio.create_task(broadcaster.listen())
        for _ in range(200):
            if socket.sent:
                break
            await asyncio.sleep(0.01)
        broadcaster.stop()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert redis.subscriptions == 2
    assert redis.closed == 2
    assert socket.sent == [{"event": "chat:new_message", "data": {"conversation_id": 4}}]


def test_shutdown_survives_a_relay_that_already_failed(monkeypatch):
    async def broken_relay():
        raise ConnectionError("redis went away")

    async def scenario():
        task = asyncio.create_task(broken_relay())
        await asyncio.sleep(0)
        monkeypatch.setattr(main.app.state, "relay_task", task, raising=False)
        monkeypatch.setattr(
            main.app.state, "broadcaster", RedisBroadcaster(FakeRedis(), ConnectionManager()), raising=False
        )
        await main.shutdown_event()
        return task

    task = asyncio.run(scenario())
    assert task.done()
    assert isinstance(task.exception(), ConnectionError)


def ws_url(user_id):
    return f"/api/v1/chat/ws?token={create_access_token({'sub': user_id})}"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/v1/chat/ws?token=garbage") as websocket:
            websocket.receive_json()


def test_websocket_ping(client):
    with client.websocket_connect(ws_url(1)) as websocket:
        websocket.send_json({"action": "ping"})
        assert websocket.receive_json() == {"event": "pong", "data": {}}

        websocket.send_text("{broken")
        assert websocket.receive_json()["data"] == {"message": "Invalid payload"}


def test_websocket_join_requires_membership(client):
    conversation_id = create_conversation(client, 1, [2]).json()["id"]

    with client.websocket_connect(ws_url(3)) as websocket:
        websocket.send_json({"action": "join_conversation", "conversation_id": conversation_id})
        assert websocket.receive_json() == {"event": "error", "data": {"message": "Access denied"}}


def test_websocket_typing_and_read(client):
    conversation_id = create_conversation(client, 1, [2]).json()["id"]

    with client.websocket_connect(ws_url(2)) as websocket:
        websocket.send_json({"action": "join_conversation", "conversation_id": conversation_id})
        websocket.send_json({"action": "typing", "conversation_id": conversation_id})
        event = websocket.receive_json()
        assert event["event"] == "chat:typing"
        assert event["data"] == {"conversation_id": conversation_id, "user_id": 2, "user_name": "Bình Trần"}

        websocket.send_json({"action": "mark_read", "conversation_id": conversation_id})
        event = websocket.receive_json()
        assert event["event"] == "chat:conversation_read"
        assert event["data"]["user_id"] == 2

        websocket.send_json({"action": "leave_conversation", "conversation_id": conversation_id})
        websocket.send_json({"action": "ping"})
        assert websocket.receive_json()["event"] == "pong"

