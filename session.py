import uuid
from contextlib import suppress
from typing import Optional, Union

import redis
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from backend import RedisPubSubBridge
from logging_config import get_logger
from registry import ConnectionRegistry
from schemas.messages import (
    ChatEvent,
    ChatMessage,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    PingMessage,
    PongMessage,
    ProtocolError,
    ServerMessage,
    SystemMessage,
    dump_message,
    parse_client_message,
    room_notice,
)

logger = get_logger(__name__)

# Raised by Starlette/uvicorn when writing to a socket that is closing or gone
TRANSPORT_ERRORS = (RuntimeError, OSError, WebSocketDisconnect)


class ChatSession:
    """State of one client connection: Unjoined, or joined to exactly one room.

    Frames are handled one at a time in receipt order. Chat is never echoed
    locally; the sender gets its own message back through the broker like
    every other member of the room.
    """

    def __init__(self, websocket: WebSocket, registry: ConnectionRegistry, bridge: RedisPubSubBridge):
        self.websocket = websocket
        self.registry = registry
        self.bridge = bridge
        self.connection_id = str(uuid.uuid4())
        self.current_room: Optional[str] = None
        self.is_alive = True
        self.closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self.closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def handle_text(self, raw: Union[str, bytes]) -> None:
        if self.closed:
            return
        # Any frame from the peer proves it is alive, not only a pong
        self.is_alive = True

        message = parse_client_message(raw)

        if isinstance(message, ProtocolError):
            if message.message_type == "chat" and self.current_room is None:
                await self.send(ErrorMessage(error="Join a room first"))
                return
            logger.debug(f"Protocol error from connection {self.connection_id}: {message.reason}")
            await self.send(ErrorMessage(error=message.reason))
        elif isinstance(message, JoinMessage):
            await self.join(message.room)
        elif isinstance(message, ChatMessage):
            await self.chat(message.text)
        elif isinstance(message, LeaveMessage):
            await self.leave()
        elif isinstance(message, PongMessage):
            logger.debug(f"Keepalive response from connection {self.connection_id}")

    async def join(self, room_id: str) -> None:
        if self.current_room is not None:
            await self.leave()
            # Terminated while announcing the leave
            if self.closed:
                return

        self.current_room = room_id
        self.registry.add(room_id, self)

        try:
            await self.bridge.ensure_subscribed(room_id)
        except redis.RedisError as e:
            logger.error(f"Could not subscribe connection {self.connection_id} to room {room_id}: {e}", exc_info=True)
            if self.current_room == room_id:
                self.registry.remove(room_id, self)
                self.current_room = None
            await self.send(ErrorMessage(error=f"Could not join room {room_id}"))
            return

        # Socket closed while subscribing
        if self.closed:
            if self.current_room == room_id:
                self.registry.remove(room_id, self)
                self.current_room = None
            return

        logger.info(f"Connection {self.connection_id} joined room {room_id}")
        await self.send(SystemMessage(text=f"Joined room {room_id}"))
        await self.bridge.publish(room_id, room_notice(room_id, "joined"))

    async def chat(self, text: str) -> None:
        room_id = self.current_room
        if room_id is None:
            await self.send(ErrorMessage(error="Join a room first"))
            return
        await self.bridge.publish(room_id, ChatEvent(room=room_id, text=text))

    async def leave(self) -> None:
        room_id = self.current_room
        if room_id is None:
            return
        self.registry.remove(room_id, self)
        self.current_room = None
        logger.info(f"Connection {self.connection_id} left room {room_id}")
        await self.bridge.publish(room_id, room_notice(room_id, "left"))

    async def disconnect(self) -> None:
        """Run leave cleanup for a closed socket. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        logger.info(f"Connection {self.connection_id} disconnected")
        await self.leave()

    async def terminate(self) -> None:
        logger.info(f"Terminating unresponsive connection {self.connection_id}")
        with suppress(*TRANSPORT_ERRORS):
            await self.websocket.close(code=1001)
        await self.disconnect()

    async def ping(self) -> None:
        await self.send(PingMessage())

    async def send(self, message: ServerMessage) -> None:
        await self.send_text(dump_message(message))

    async def send_text(self, text: str) -> None:
        if not self.is_open:
            return
        try:
            await self.websocket.send_text(text)
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Error sending to connection {self.connection_id}: {e}")
