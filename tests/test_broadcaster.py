from __future__ import annotations

import json

import pytest
import pytest_asyncio

from services.broadcaster import FanOutBroadcaster
from services.cache_debouncer import CacheDebouncer
from services.log_store import JsonFileStore
from services.tenant_locks import TenantLocks
from tests.fixtures import FakeConnection, make_item


@pytest_asyncio.fixture
async def broadcaster(tmp_path):
    store = JsonFileStore(tmp_path)
    debouncer = CacheDebouncer(store, TenantLocks(), delay_s=0.01)
    fanout = FanOutBroadcaster(debouncer)
    yield fanout
    await fanout.close()
    await debouncer.close()


@pytest.mark.asyncio
async def test_publish_reaches_only_matching_tenant(broadcaster):
    a1, a2, b1 = FakeConnection(), FakeConnection(), FakeConnection()
    subs = [
        broadcaster.register_connection("acme", a1),
        broadcaster.register_connection("acme", a2),
        broadcaster.register_connection("beta", b1),
    ]

    delivered = broadcaster.publish("acme", make_item(1))
    for sub in subs:
        await sub.flush()

    assert delivered == 2
    assert json.loads(a1.sent[0])[0]["link"] == "http://example.com/1"
    assert a1.sent == a2.sent
    assert b1.sent == []


@pytest.mark.asyncio
async def test_broken_and_closed_connections_do_not_block_others(broadcaster):
    broken, closed, healthy = FakeConnection(fail=True), FakeConnection(), FakeConnection()
    closed.disconnect()
    subs = [broadcaster.register_connection("acme", c) for c in (broken, closed, healthy)]

    broadcaster.publish("acme", make_item(1))
    broadcaster.publish("acme", make_item(2))
    for sub in subs:
        await sub.flush()

    assert closed.sent == []
    assert [json.loads(m)[0]["link"] for m in healthy.sent] == [
        "http://example.com/1",
        "http://example.com/2",
    ]


@pytest.mark.asyncio
async def test_greet_sends_placeholder_then_snapshot(broadcaster):
    first = FakeConnection()
    sub = broadcaster.register_connection("acme", first)
    broadcaster.greet(sub)
    await sub.flush()
    assert json.loads(first.sent[0])[0]["title"] == ""

    await broadcaster.debouncer.store.append("acme", make_item(1))
    await broadcaster.debouncer.rebuild_now("acme")

    second = FakeConnection()
    sub2 = broadcaster.register_connection("acme", second)
    broadcaster.greet(sub2)
    await sub2.flush()
    assert json.loads(second.sent[0]) == [make_item(1).to_wire()]


@pytest.mark.asyncio
async def test_unregister_stops_delivery(broadcaster):
    conn = FakeConnection()
    sub = broadcaster.register_connection("acme", conn)
    assert broadcaster.subscriber_count("acme") == 1

    await broadcaster.unregister_connection(sub)

    assert broadcaster.subscriber_count("acme") == 0
    assert broadcaster.publish("acme", make_item(1)) == 0
    assert conn.sent == []


@pytest.mark.asyncio
async def test_control_messages_share_the_ordered_queue(broadcaster):
    conn = FakeConnection()
    sub = broadcaster.register_connection("acme", conn)

    broadcaster.greet(sub)
    broadcaster.send_control(sub, "pong")
    broadcaster.publish("acme", make_item(1))
    await sub.flush()

    assert conn.sent[1] == "pong"
    assert json.loads(conn.sent[2])[0]["link"] == "http://example.com/1"


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking(tmp_path):
    debouncer = CacheDebouncer(JsonFileStore(tmp_path), TenantLocks())
    fanout = FanOutBroadcaster(debouncer, queue_size=1)
    conn = FakeConnection()
    sub = fanout.register_connection("acme", conn)

    # sender task has not run yet, so the second offer finds the queue full
    assert fanout.publish("acme", make_item(1)) == 1
    assert fanout.publish("acme", make_item(2)) == 0
    await sub.flush()

    assert len(conn.sent) == 1
    await fanout.close()
