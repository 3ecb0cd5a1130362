from typing import Dict, Set

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """Room -> locally connected sessions, for this instance only.

    Each instance tracks only its own connections; Redis pub/sub carries
    traffic between instances and every instance fans out to its local
    members. A room key exists only while it has at least one member.

    All methods are synchronous so membership is never observed half-updated
    from another task on the event loop.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[object]] = {}

    def add(self, room_id: str, conn) -> None:
        members = self._rooms.setdefault(room_id, set())
        members.add(conn)
        logger.debug(f"Added connection to room {room_id} (local connections: {len(members)})")

    def remove(self, room_id: str, conn) -> None:
        members = self._rooms.get(room_id)
        if not members:
            return
        members.discard(conn)
        if not members:
            del self._rooms[room_id]
            logger.info(f"No more local connections in room {room_id}")

    def members_of(self, room_id: str) -> Set[object]:
        return set(self._rooms.get(room_id, ()))

    def rooms(self) -> Dict[str, int]:
        """Locally occupied rooms with their member counts."""
        return {room_id: len(members) for room_id, members in self._rooms.items()}

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms
