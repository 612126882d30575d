import asyncio
import pytest

from server.websocket_manager import Connection, WebSocketManager
from shared.models import EventType
from tests.test_helpers import FakeWebSocket


class SlowWebSocket(FakeWebSocket):
    """Yields to the loop mid-send so interleaving would show up."""

    async def send_json(self, obj):
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.sent.append(obj)


class BrokenWebSocket(FakeWebSocket):
    async def send_json(self, obj):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_connection_send_event_envelope():
    ws = FakeWebSocket()
    conn = Connection(ws, "c1", "alice")
    await conn.send_event(EventType.QUEUE_UPDATED, [{"uri": "u:1"}])
    assert ws.sent == [{"event": "queue:updated", "data": [{"uri": "u:1"}]}]


@pytest.mark.asyncio
async def test_websocket_manager_add_remove_list_get():
    mgr = WebSocketManager()
    c1 = Connection(FakeWebSocket(), "c1", "u1")
    await mgr.add(c1)
    assert "c1" in await mgr.list_connections()
    assert await mgr.get("c1") is c1
    await mgr.remove("c1")
    await mgr.remove("c1")
    assert "c1" not in await mgr.list_connections()


@pytest.mark.asyncio
async def test_broadcast_excludes_origin():
    mgr = WebSocketManager()
    a, b = FakeWebSocket(), FakeWebSocket()
    await mgr.add(Connection(a, "a", "alice"))
    await mgr.add(Connection(b, "b", "bob"))

    mgr.broadcast(EventType.PLAYBACK_SKIP, {"by": "alice"}, exclude="a")
    await mgr.drain()
    assert a.sent == []
    assert b.sent == [{"event": "playback:skip", "data": {"by": "alice"}}]


@pytest.mark.asyncio
async def test_same_event_keeps_emission_order_per_client():
    mgr = WebSocketManager()
    slow = SlowWebSocket()
    await mgr.add(Connection(slow, "s", "slow"))

    for i in range(5):
        mgr.broadcast(EventType.QUEUE_UPDATED, [{"uri": f"u:{i}"}])
    await mgr.drain()
    assert [f["data"][0]["uri"] for f in slow.sent] == [f"u:{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_broadcast_survives_broken_connection():
    mgr = WebSocketManager()
    good = FakeWebSocket()
    await mgr.add(Connection(BrokenWebSocket(), "bad", "bad"))
    await mgr.add(Connection(good, "good", "good"))

    # should not raise despite the bad sender
    mgr.broadcast(EventType.USERS_UPDATE, ["good"])
    await mgr.drain()
    assert good.sent and good.sent[-1]["event"] == "users:update"


@pytest.mark.asyncio
async def test_send_to_missing_connection():
    mgr = WebSocketManager()
    assert mgr.send("ghost", EventType.ERROR, {"error": "x"}) is False
