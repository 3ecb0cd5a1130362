import asyncio
import json
from typing import Optional

import pytest
import pytest_asyncio
import redis
from starlette.websockets import WebSocketState


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent_messages: list[str] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code: Optional[int] = None
        self.fail_sends = False

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code

    def drop(self) -> None:
        """Simulate the peer going away without a close handshake."""
        self.client_state = WebSocketState.DISCONNECTED

    @property
    def received(self) -> list[dict]:
        return [json.loads(msg) for msg in self.sent_messages]


class InMemoryPubSub:
    def __init__(self, broker: "InMemoryBroker") -> None:
        self.broker = broker
        self.channels: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        self.broker.subscribe_calls.extend(channels)
        # Yield so concurrent joiners can race the in-flight subscribe
        await asyncio.sleep(0)
        if self.broker.fail_subscribe:
            raise redis.ConnectionError("broker unavailable")
        self.channels.update(channels)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                return self.queue.get_nowait()
            except asyncio.QueueEmpty:
                if loop.time() >= deadline:
                    return None
            await asyncio.sleep(0.005)

    async def aclose(self) -> None:
        self.closed = True


class InMemoryBroker:
    """Async Redis stand-in exposing just PUBLISH and a PubSub object."""

    def __init__(self) -> None:
        self.pubsubs: list[InMemoryPubSub] = []
        self.published: list[tuple[str, str]] = []
        self.subscribe_calls: list[str] = []
        self.fail_subscribe = False
        self.fail_publish = False

    def pubsub(self, **kwargs) -> InMemoryPubSub:
        pubsub = InMemoryPubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def publish(self, channel: str, data: str) -> int:
        if self.fail_publish:
            raise redis.ConnectionError("broker unavailable")
        self.published.append((channel, data))
        receivers = 0
        for pubsub in self.pubsubs:
            if channel in pubsub.channels:
                pubsub.queue.put_nowait({"type": "message", "pattern": None, "channel": channel, "data": data})
                receivers += 1
        return receivers

    def published_payloads(self) -> list[dict]:
        return [json.loads(data) for _, data in self.published]


async def wait_for_messages(ws: DummyWebSocket, count: int, timeout: float = 1.0) -> list[dict]:
    """Wait until the dummy socket has received at least ``count`` frames."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(ws.sent_messages) < count and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return ws.received


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def registry():
    from registry import ConnectionRegistry

    return ConnectionRegistry()


@pytest_asyncio.fixture
async def bridge(broker, registry):
    from backend import RedisPubSubBridge

    bridge = RedisPubSubBridge(broker, broker, registry, poll_timeout=0.05)
    yield bridge
    await bridge.close()


@pytest.fixture
def make_session(registry, bridge):
    from session import ChatSession

    def _make() -> ChatSession:
        return ChatSession(DummyWebSocket(), registry, bridge)

    return _make
