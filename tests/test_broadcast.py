import asyncio
import json

import pytest

from conftest import FakeConnection
from smartpark.broadcast import BroadcastHub, SubscriptionRegistry, lot_channel
from smartpark.slot_state import SlotTransition


def make_transition(lot_id, delta=-1):
    return SlotTransition(slot_id=11, lot_id=lot_id, previous_status="available", status="occupied",
                          delta=delta, updates={"status": "occupied", "updatedAt": "2026-10-18T10:00:00Z"})


def events(conn):
    return [json.loads(m)["event"] for m in conn.sent]


def test_registry_insert_remove_lookup():
    registry = SubscriptionRegistry()
    registry.insert("a", "lot:1")
    registry.insert("a", "lot:2")
    registry.insert("b", "lot:1")
    assert registry.lookup("lot:1") == {"a", "b"}
    assert registry.channels_for("a") == {"lot:1", "lot:2"}

    registry.remove("a", "lot:1")
    assert registry.lookup("lot:1") == {"b"}
    registry.remove_connection("a")
    assert registry.channels_for("a") == set()
    assert registry.lookup("lot:2") == set()


def test_scenario_d_lot_scoped_vs_global_events():
    hub = BroadcastHub()
    conn_a = FakeConnection()

    async def run():
        await hub.connect("a", conn_a)
        await hub.subscribe("a", "X")
        await hub.publish_transition(make_transition("Y"))

    asyncio.run(run())
    assert events(conn_a) == ["lot:updated"]
    assert json.loads(conn_a.sent[0])["data"]["lotId"] == "Y"


def test_publish_reaches_every_subscriber_of_the_lot_only():
    hub = BroadcastHub()
    a, b, c = FakeConnection(), FakeConnection(), FakeConnection()

    async def run():
        for cid, conn in (("a", a), ("b", b), ("c", c)):
            await hub.connect(cid, conn)
        await hub.subscribe("a", 1)
        await hub.subscribe("b", 1)
        await hub.subscribe("c", 2)
        return await hub.publish(1, "slot:updated", {"slotId": 5})

    assert asyncio.run(run()) == 2
    assert events(a) == events(b) == ["slot:updated"]
    assert c.sent == []


def test_connection_may_follow_several_lots():
    hub = BroadcastHub()
    conn = FakeConnection()

    async def run():
        await hub.connect("a", conn)
        await hub.subscribe("a", 1)
        await hub.subscribe("a", 2)
        await hub.publish_transition(make_transition(1))
        await hub.publish_transition(make_transition(2))

    asyncio.run(run())
    assert events(conn) == ["slot:updated", "lot:updated", "slot:updated", "lot:updated"]


def test_unsubscribe_stops_lot_events():
    hub = BroadcastHub()
    conn = FakeConnection()

    async def run():
        await hub.connect("a", conn)
        await hub.subscribe("a", 1)
        await hub.unsubscribe("a", 1)
        await hub.publish_transition(make_transition(1))

    asyncio.run(run())
    assert events(conn) == ["lot:updated"]
    assert hub.subscribers(1) == set()


def test_failing_connection_is_dropped():
    hub = BroadcastHub()
    good, bad = FakeConnection(), FakeConnection(fail=True)

    async def run():
        await hub.connect("good", good)
        await hub.connect("bad", bad)
        await hub.subscribe("good", 1)
        await hub.subscribe("bad", 1)
        return await hub.publish(1, "slot:updated", {})

    assert asyncio.run(run()) == 1
    assert "bad" not in hub.active_connections
    assert hub.subscribers(1) == {"good"}
    assert bad.closed_with == 1011
    assert good.closed_with is None


def test_disconnect_clears_subscriptions():
    hub = BroadcastHub()

    async def run():
        await hub.connect("a", FakeConnection())
        await hub.subscribe("a", 3)
        await hub.disconnect("a")

    asyncio.run(run())
    assert hub.subscribers(3) == set()
    assert hub.active_connections == {}


def test_subscribe_requires_connection():
    hub = BroadcastHub()
    with pytest.raises(KeyError):
        asyncio.run(hub.subscribe("ghost", 1))


def test_handle_message_protocol():
    hub = BroadcastHub()

    async def run():
        await hub.connect("a", FakeConnection())
        replies = [
            await hub.handle_message("a", json.dumps({"event": "subscribe", "data": {"type": "lot", "id": 4}})),
            await hub.handle_message("a", json.dumps({"event": "ping"})),
            await hub.handle_message("a", json.dumps({"event": "unsubscribe", "data": {"type": "lot", "id": 4}})),
            await hub.handle_message("a", json.dumps({"event": "subscribe", "data": {"type": "zone", "id": 4}})),
            await hub.handle_message("a", "not json"),
            await hub.handle_message("a", json.dumps({"event": "dance"})),
        ]
        return replies

    replies = asyncio.run(run())
    assert [r["event"] for r in replies] == ["subscribed", "pong", "unsubscribed", "error", "error", "error"]
    assert replies[0]["data"]["message"] == f"Subscribed to {lot_channel(4)}"
    assert hub.subscribers(4) == set()
