from fastapi import APIRouter, Request

from logging_config import get_logger
from schemas.rooms import RoomListResponse, RoomStatusResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("", response_model=RoomListResponse)
async def list_rooms(request: Request):
    """Rooms with at least one member connected to this instance."""
    registry = request.app.state.registry
    bridge = request.app.state.bridge

    rooms = [
        RoomStatusResponse(room_id=room_id, local_members=count, subscribed=bridge.is_subscribed(room_id))
        for room_id, count in sorted(registry.rooms().items())
    ]
    logger.debug(f"Listing {len(rooms)} locally occupied rooms")
    return RoomListResponse(rooms=rooms, subscribed_rooms=bridge.subscribed_rooms())


@rooms_router.get("/{room_id}", response_model=RoomStatusResponse)
async def get_room_status(room_id: str, request: Request):
    """
    Get this instance's view of a room.

    Returns:
    - room_id: Room identifier
    - local_members: Connections on this instance currently in the room
    - subscribed: Whether this instance is subscribed to the room's channel

    Unknown rooms are not an error; they report zero members.
    """
    registry = request.app.state.registry
    bridge = request.app.state.bridge

    return RoomStatusResponse(
        room_id=room_id,
        local_members=len(registry.members_of(room_id)),
        subscribed=bridge.is_subscribed(room_id),
    )
