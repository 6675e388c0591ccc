import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REALTIME_BACKEND"] = "local"

from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import SessionLocal, engine
from dependencies import get_broadcaster, get_dispatcher, get_object_store
from main import app
from models import Base, User
from realtime import ConnectionManager
from storage import ObjectStore

PRESIGNED_HOST = "http://minio.test"


class FakeMinio:
    """Just enough of minio.Minio for ObjectStore."""

    def __init__(self):
        self.objects = {}
        self.direct_broken = False
        self.presigned_broken = False

    def bucket_exists(self, bucket_name):
        return True

    def make_bucket(self, bucket_name):
        pass

    def put_object(self, bucket_name, object_name, data, length, content_type, metadata=None):
        self.objects[object_name] = (data.read(), content_type, metadata)

    def _get(self, object_name):
        if self.direct_broken:
            raise ConnectionError("storage endpoint unreachable")
        if object_name not in self.objects:
            raise KeyError(object_name)
        return self.objects[object_name]

    def stat_object(self, bucket_name, object_name):
        data, content_type, _ = self._get(object_name)
        return SimpleNamespace(size=len(data), content_type=content_type)

    def get_object(self, bucket_name, object_name):
        data, _, _ = self._get(object_name)
        return SimpleNamespace(
            stream=lambda size: iter([data[i:i + size] for i in range(0, len(data), size)]),
            close=lambda: None,
            release_conn=lambda: None,
        )

    def presigned_get_object(self, bucket_name, object_name, expires):
        return f"{PRESIGNED_HOST}/{bucket_name}/{object_name}"

    def remove_object(self, bucket_name, object_name):
        self.objects.pop(object_name, None)

    def serve(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.split("/", 2)[-1]
        if self.presigned_broken or key not in self.objects:
            return httpx.Response(404)
        data, content_type, _ = self.objects[key]
        return httpx.Response(200, content=data, headers={"content-type": content_type})


class RecordingBroadcaster:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self.events = []

    async def emit(self, room, event, payload):
        self.events.append((room, event, payload))
        await self.manager.emit(room, event, payload)

    def named(self, event):
        return [(room, payload) for room, name, payload in self.events if name == event]


class FakeDispatcher:
    def __init__(self):
        self.messages = []
        self.mentions = []
        self.failures = 0

    def notify_chat_message(self, recipient_ids, payload):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unavailable")
        self.messages.append((recipient_ids, payload))

    def notify_mention(self, user_id, payload):
        self.mentions.append((user_id, payload))


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    db.add_all([
        User(id=1, email="alice@example.com", name="Alice Nguyen", username="alice"),
        User(id=2, email="binh@example.com", name="Bình Trần", username="binh", avatar="data:image/png;base64,iVBORw0KGgo="),
        User(id=3, email="carol@example.com", name="Carol White", username="carol"),
        User(id=4, email="duc@example.com", name="Đức Lê", username="duc.le"),
    ])
    db.commit()
    db.close()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def fake_minio():
    return FakeMinio()


@pytest.fixture
def store(fake_minio):
    return ObjectStore(fake_minio, "chat", transport=httpx.MockTransport(fake_minio.serve))


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster(ConnectionManager())


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def client(store, broadcaster, dispatcher):
    app.dependency_overrides[get_object_store] = lambda: store
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.state.connection_manager = broadcaster.manager
    app.state.broadcaster = broadcaster
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def create_conversation(client, user_id, member_ids, conversation_type="PRIVATE", name=None):
    data = {"type": conversation_type, "member_ids": [str(m) for m in member_ids]}
    if name:
        data["name"] = name
    return client.post("/api/v1/chat/conversations", data=data, headers=auth_headers(user_id))


def send_text(client, user_id, conversation_id, content):
    return client.post(
        f"/api/v1/chat/conversations/{conversation_id}/messages",
        json={"content": content},
        headers=auth_headers(user_id)
    )
