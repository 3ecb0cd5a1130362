import asyncio
from contextlib import suppress
from typing import Dict, List, Optional

import redis
import redis.asyncio as aioredis
from pydantic import BaseModel

from logging_config import get_logger
from redis_keys import room_channel, room_from_channel
from registry import ConnectionRegistry
from schemas.messages import dump_message, parse_broker_payload

logger = get_logger(__name__)


class RedisPubSubBridge:
    """Relays room traffic between instances through Redis pub/sub.

    One client publishes; a single PubSub connection on a separate client
    carries every room subscription for this instance. Deliveries from Redis
    are fanned out to the room's local members found in the registry,
    including the sender's own connection, so local and remote members see
    the same stream.

    Subscriptions are memoized for the life of the process: a room stays
    subscribed after its last local member leaves.
    """

    def __init__(
        self,
        publisher: aioredis.Redis,
        subscriber: aioredis.Redis,
        registry: ConnectionRegistry,
        poll_timeout: float = 1.0,
    ):
        self.publisher = publisher
        self.subscriber = subscriber
        self.registry = registry
        self.poll_timeout = poll_timeout
        # Separate connection for pub/sub (required by Redis)
        self.pubsub = subscriber.pubsub(ignore_subscribe_messages=True)
        self._subscriptions: Dict[str, asyncio.Future] = {}
        self._listener_task: Optional[asyncio.Task] = None
        self._closing = False

    async def ensure_subscribed(self, room_id: str) -> None:
        """Subscribe to the room's channel once; concurrent callers share the same SUBSCRIBE."""
        task = self._subscriptions.get(room_id)
        if task is None:
            task = asyncio.ensure_future(self._subscribe(room_id))
            self._subscriptions[room_id] = task
        try:
            await asyncio.shield(task)
        except redis.RedisError:
            # Forget the failed attempt so a later join can retry
            if self._subscriptions.get(room_id) is task:
                del self._subscriptions[room_id]
            raise

    async def _subscribe(self, room_id: str) -> None:
        channel = room_channel(room_id)
        logger.debug(f"Subscribing to Redis channel {channel} for room {room_id}")
        await self.pubsub.subscribe(channel)
        logger.info(f"Subscribed to Redis channel for room: {room_id}")
        self._ensure_listener()

    def is_subscribed(self, room_id: str) -> bool:
        task = self._subscriptions.get(room_id)
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    def subscribed_rooms(self) -> List[str]:
        return sorted(room_id for room_id in self._subscriptions if self.is_subscribed(room_id))

    async def publish(self, room_id: str, message: BaseModel) -> None:
        """Publish a message to the room's channel. Fire and forget: broker errors are logged, not raised."""
        channel = room_channel(room_id)
        try:
            subscribers = await self.publisher.publish(channel, dump_message(message))
        except redis.RedisError as e:
            logger.error(f"Failed to publish to room {room_id} channel {channel}: {e}", exc_info=True)
            return
        logger.debug(f"Published message to room {room_id} channel {channel}, {subscribers} subscribers")

    async def handle_message(self, channel: str, data) -> None:
        """Fan a broker delivery out to the room's open local connections."""
        message = parse_broker_payload(data)
        if message is None:
            logger.debug(f"Dropping malformed payload on channel {channel}")
            return

        room_id = room_from_channel(channel)
        members = [conn for conn in self.registry.members_of(room_id) if conn.is_open]
        if not members:
            return

        text = dump_message(message)
        await asyncio.gather(*(conn.send_text(text) for conn in members), return_exceptions=True)
        logger.debug(f"Broadcasted {message.type} message to {len(members)} connections in room {room_id}")

    def _ensure_listener(self) -> None:
        if not self._closing and (self._listener_task is None or self._listener_task.done()):
            self._listener_task = asyncio.create_task(self._listen())
            logger.debug("Started Redis pub/sub listener")

    async def _listen(self) -> None:
        logger.info("Redis pub/sub listener running")
        while not self._closing:
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
            except redis.RedisError as e:
                logger.error(f"Error reading from Redis pub/sub: {e}", exc_info=True)
                await asyncio.sleep(self.poll_timeout)
                continue

            if message is None or message.get("type") != "message":
                continue
            await self.handle_message(message["channel"], message["data"])

    async def close(self) -> None:
        self._closing = True
        if self._listener_task is not None:
            self._listener_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None
            logger.debug("Cancelled Redis pub/sub listener")
        await self.pubsub.aclose()
        logger.debug("Closed pub/sub connection")
