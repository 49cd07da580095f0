import fakeredis
import pytest

from connections import RedisConnectionManager
from redis_keys import REDIS_INSTANCE_ALIVE_KEY
from registry import RedisSessionRegistry
from signaling import SignalingRouter

pytestmark = pytest.mark.anyio


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def make_instance(redis_client):
    """A fresh SignalingRouter sharing the one Redis, as a second server process would."""
    def _make():
        return SignalingRouter(RedisSessionRegistry(redis_client), RedisConnectionManager(redis_client))
    return _make


async def join(instance, conn_id, websocket, room, name):
    await instance.connect(conn_id, websocket)
    await instance.dispatch(conn_id, {"event": "join", "data": {"room": room, "name": name}})


async def test_call_setup_across_instances(make_instance, fake_websocket):
    one, two = make_instance(), make_instance()
    a, b = fake_websocket(), fake_websocket()

    await join(one, "A", a, "r", "alice")
    await join(two, "B", b, "r", "bob")
    assert b.events("peers-list")[0]["data"]["peers"] == [{"id": "A", "name": "alice"}]

    assert await one.connections.pump(timeout=0) == 1
    assert a.events("peer-joined") == [
        {"event": "peer-joined", "data": {"callerId": "B", "name": "bob", "signal": None}}
    ]

    await two.dispatch("B", {"event": "relay-offer", "data": {"targetId": "A", "signal": "OFFER1"}})
    await one.connections.pump(timeout=0)
    assert a.events("peer-signal") == [{"event": "peer-signal", "data": {"signal": "OFFER1", "callerId": "B"}}]

    await one.dispatch("A", {"event": "relay-answer", "data": {"targetId": "B", "signal": "ANSWER1"}})
    await two.connections.pump(timeout=0)
    assert b.events("signal-returned") == [{"event": "signal-returned", "data": {"id": "A", "signal": "ANSWER1"}}]

    await one.dispatch("A", {"event": "chat-relay", "data": {"room": "r", "text": "hi", "name": "alice"}})
    await two.connections.pump(timeout=0)
    assert b.events("message-received") == [{"event": "message-received", "data": {"user": "alice", "text": "hi"}}]

    await two.disconnect("B")
    await one.connections.pump(timeout=0)
    assert a.events("peer-left") == [{"event": "peer-left", "data": {"connId": "B"}}]
    assert one.registry.list_others("r", "A") == []


async def test_relay_to_connection_that_left_every_instance_is_dropped(make_instance, fake_websocket):
    one, two = make_instance(), make_instance()
    a, b = fake_websocket(), fake_websocket()
    await join(one, "A", a, "r", "alice")
    await join(two, "B", b, "r", "bob")
    await two.disconnect("B")

    delivered = await one.connections.send("B", "peer-signal", {"signal": "S", "callerId": "A"})

    assert delivered is False
    assert not one.connections.is_connected("B")


async def test_participants_of_dead_instance_are_pruned_on_join(redis_client, make_instance, fake_websocket):
    crashed = make_instance()
    await join(crashed, "A", fake_websocket(), "r", "alice")
    # the crashed process stops refreshing its heartbeat and the key expires
    redis_client.delete(REDIS_INSTANCE_ALIVE_KEY.format(instance_id=crashed.connections.instance_id))

    survivor = make_instance()
    c = fake_websocket()
    await join(survivor, "C", c, "r", "carol")

    assert c.events("peers-list") == [{"event": "peers-list", "data": {"peers": []}}]
    assert survivor.registry.rooms_containing("A") == []
    assert [p.id for p in survivor.registry.participants("r")] == ["C"]


async def test_heartbeat_expires_and_close_marks_instance_gone(redis_client):
    manager = RedisConnectionManager(redis_client, instance_id="i1", heartbeat_ttl=30)
    alive_key = REDIS_INSTANCE_ALIVE_KEY.format(instance_id="i1")

    assert 0 < redis_client.ttl(alive_key) <= 30

    manager.register("A", object())
    assert manager.owner_of("A") == "i1"

    manager.close()
    assert not redis_client.exists(alive_key)
    assert manager.owner_of("A") is None
