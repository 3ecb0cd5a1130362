import json
import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator


def now_ms() -> int:
    return int(time.time() * 1000)


def _coerce_text(value: Any) -> str:
    # Scalars arrive as numbers/bools from some clients; objects and lists never count
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---- Client -> server ----

class JoinMessage(BaseModel):
    type: Literal["join"]
    room: str

    @model_validator(mode="before")
    @classmethod
    def _pick_room(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["room"] = _coerce_text(data.get("room")) or _coerce_text(data.get("roomId"))
        return data

    @field_validator("room")
    @classmethod
    def _room_required(cls, value: str) -> str:
        if not value:
            raise ValueError("room is required")
        return value


class ChatMessage(BaseModel):
    type: Literal["chat"]
    text: str

    @model_validator(mode="before")
    @classmethod
    def _pick_text(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            text = data.get("text")
            if text is None:
                text = data.get("message")
            data["text"] = _coerce_text(text)
        return data

    @field_validator("text")
    @classmethod
    def _text_required(cls, value: str) -> str:
        if not value:
            raise ValueError("text is required")
        return value


class LeaveMessage(BaseModel):
    type: Literal["leave"]


class PongMessage(BaseModel):
    """Keepalive response to a ``ping`` probe."""
    type: Literal["pong"]


ClientMessage = Union[JoinMessage, ChatMessage, LeaveMessage, PongMessage]

CLIENT_MESSAGE_TYPES = {
    "join": (JoinMessage, "room is required"),
    "chat": (ChatMessage, "text is required"),
    "leave": (LeaveMessage, "Invalid message"),
    "pong": (PongMessage, "Invalid message"),
}


class ProtocolError(BaseModel):
    """A client frame that cannot be acted on; answered with an ``error`` frame."""
    reason: str
    message_type: Optional[str] = None


def parse_client_message(raw: Union[str, bytes]) -> Union[ClientMessage, ProtocolError]:
    """Parse one inbound frame into a typed message, or a ProtocolError. Never raises."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return ProtocolError(reason="Invalid JSON")

    if not isinstance(data, dict):
        return ProtocolError(reason="Invalid JSON")

    msg_type = data.get("type")
    entry = CLIENT_MESSAGE_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if entry is None:
        return ProtocolError(reason="Unknown message type")

    model, missing_reason = entry
    try:
        return model.model_validate(data)
    except ValidationError:
        return ProtocolError(reason=missing_reason, message_type=msg_type)


# ---- Server -> client (and broker payloads) ----

class SystemMessage(BaseModel):
    type: Literal["system"] = "system"
    room: Optional[str] = None
    text: str
    ts: Optional[int] = None


class ChatEvent(BaseModel):
    type: Literal["chat"] = "chat"
    room: str
    text: str
    ts: int = Field(default_factory=now_ms)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"
    ts: int = Field(default_factory=now_ms)


ServerMessage = Union[SystemMessage, ChatEvent, ErrorMessage, PingMessage]

BroadcastMessage = Annotated[Union[SystemMessage, ChatEvent], Field(discriminator="type")]

_broadcast_adapter = TypeAdapter(BroadcastMessage)


def room_notice(room_id: str, action: str) -> SystemMessage:
    """Broadcast notice published when a connection joins or leaves a room."""
    return SystemMessage(room=room_id, text=f"A user {action} room {room_id}", ts=now_ms())


def dump_message(message: BaseModel) -> str:
    return message.model_dump_json(exclude_none=True)


def parse_broker_payload(raw: Union[str, bytes]) -> Optional[Union[SystemMessage, ChatEvent]]:
    """Validate a payload received from the broker. Returns None when malformed."""
    try:
        return _broadcast_adapter.validate_json(raw)
    except ValidationError:
        return None
