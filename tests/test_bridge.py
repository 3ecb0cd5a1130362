import asyncio
import logging

import pytest
import redis

from conftest import wait_for_messages
from schemas.messages import ChatEvent, room_notice


@pytest.mark.asyncio
async def test_concurrent_subscribes_issue_one_subscribe(bridge, broker):
    await asyncio.gather(*(bridge.ensure_subscribed("lobby") for _ in range(5)))
    await bridge.ensure_subscribed("lobby")

    assert broker.subscribe_calls == ["room:lobby"]
    assert bridge.is_subscribed("lobby")
    assert bridge.subscribed_rooms() == ["lobby"]


@pytest.mark.asyncio
async def test_failed_subscribe_is_retried(bridge, broker):
    broker.fail_subscribe = True
    with pytest.raises(redis.ConnectionError):
        await bridge.ensure_subscribed("lobby")
    assert not bridge.is_subscribed("lobby")

    broker.fail_subscribe = False
    await bridge.ensure_subscribed("lobby")

    assert broker.subscribe_calls == ["room:lobby", "room:lobby"]
    assert bridge.is_subscribed("lobby")


@pytest.mark.asyncio
async def test_fanout_reaches_open_local_members_only(bridge, registry, make_session):
    open_member = make_session()
    gone_member = make_session()
    other_room = make_session()
    registry.add("lobby", open_member)
    registry.add("lobby", gone_member)
    registry.add("attic", other_room)
    gone_member.websocket.drop()

    await bridge.ensure_subscribed("lobby")
    await bridge.publish("lobby", ChatEvent(room="lobby", text="hi", ts=1))

    received = await wait_for_messages(open_member.websocket, 1)
    assert received == [{"type": "chat", "room": "lobby", "text": "hi", "ts": 1}]
    assert gone_member.websocket.sent_messages == []
    assert other_room.websocket.sent_messages == []


@pytest.mark.asyncio
async def test_send_failure_does_not_stop_fanout(bridge, registry, make_session):
    broken = make_session()
    healthy = make_session()
    broken.websocket.fail_sends = True
    registry.add("lobby", broken)
    registry.add("lobby", healthy)

    await bridge.handle_message("room:lobby", '{"type":"chat","room":"lobby","text":"hi","ts":1}')

    assert healthy.websocket.received == [{"type": "chat", "room": "lobby", "text": "hi", "ts": 1}]
    # transport errors do not prune; the connection leaves on its own close
    assert registry.members_of("lobby") == {broken, healthy}


@pytest.mark.asyncio
async def test_malformed_broker_payload_is_dropped(bridge, registry, make_session, broker):
    member = make_session()
    registry.add("lobby", member)
    await bridge.ensure_subscribed("lobby")

    await broker.publish("room:lobby", "{not json")
    await broker.publish("room:lobby", '{"type":"chat","room":"lobby","text":"after","ts":2}')

    received = await wait_for_messages(member.websocket, 1)
    assert received == [{"type": "chat", "room": "lobby", "text": "after", "ts": 2}]


@pytest.mark.asyncio
async def test_one_delivery_per_broker_message(bridge, registry, make_session):
    member = make_session()
    registry.add("lobby", member)
    await asyncio.gather(bridge.ensure_subscribed("lobby"), bridge.ensure_subscribed("lobby"))

    await bridge.publish("lobby", room_notice("lobby", "joined"))
    await wait_for_messages(member.websocket, 1)
    await asyncio.sleep(0.1)

    assert len(member.websocket.sent_messages) == 1


@pytest.mark.asyncio
async def test_subscription_outlives_last_local_member(bridge, registry, make_session):
    member = make_session()
    registry.add("lobby", member)
    await bridge.ensure_subscribed("lobby")

    registry.remove("lobby", member)

    assert registry.members_of("lobby") == set()
    assert bridge.is_subscribed("lobby")


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised(bridge, broker, caplog):
    broker.fail_publish = True
    with caplog.at_level(logging.ERROR, logger="backend"):
        await bridge.publish("lobby", ChatEvent(room="lobby", text="hi"))

    assert "Failed to publish to room lobby" in caplog.text


@pytest.mark.asyncio
async def test_close_stops_listener_and_closes_pubsub(broker, registry):
    from backend import RedisPubSubBridge

    bridge = RedisPubSubBridge(broker, broker, registry, poll_timeout=0.05)
    await bridge.ensure_subscribed("lobby")
    listener = bridge._listener_task

    await bridge.close()

    assert listener.done()
    assert broker.pubsubs[0].closed
