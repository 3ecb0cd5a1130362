from pydantic import BaseModel


class RoomStatusResponse(BaseModel):
    room_id: str
    local_members: int
    subscribed: bool

class RoomListResponse(BaseModel):
    rooms: list[RoomStatusResponse]
    subscribed_rooms: list[str]
