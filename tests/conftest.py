import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import app
from connections import ConnectionManager
from registry import InMemorySessionRegistry, RedisSessionRegistry
from signaling import SignalingRouter


class FakeWebSocket:
    """Records what the server sends instead of writing to a socket."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(params=["memory", "redis"])
def registry(request):
    if request.param == "memory":
        return InMemorySessionRegistry()
    return RedisSessionRegistry(fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def router():
    return SignalingRouter(InMemorySessionRegistry(), ConnectionManager())


@pytest.fixture
def fake_websocket():
    return FakeWebSocket


@pytest.fixture
def connect(router):
    async def _connect(conn_id: str, fail: bool = False) -> FakeWebSocket:
        websocket = FakeWebSocket(fail=fail)
        await router.connect(conn_id, websocket)
        websocket.sent.clear()
        return websocket
    return _connect


@pytest.fixture
def client():
    app.state.signaling = SignalingRouter(InMemorySessionRegistry(), ConnectionManager())
    # One portal for every socket, so relays between connections stay on a single event loop
    with TestClient(app) as test_client:
        yield test_client
