REDIS_ROOM_CHANNEL = "room:{slug}" # room id - pub/sub channel name
REDIS_ROOM_CHANNEL_PREFIX = "room:"


def room_channel(room_id: str) -> str:
    """Get the Redis pub/sub channel name for a room."""
    return REDIS_ROOM_CHANNEL.format(slug=room_id)


def room_from_channel(channel: str) -> str:
    if channel.startswith(REDIS_ROOM_CHANNEL_PREFIX):
        return channel[len(REDIS_ROOM_CHANNEL_PREFIX):]
    return channel


# **Pub/Sub**
# - Channel name: `room:{roomId}`, one per room, subscribed once per instance.
# - Payloads are the same JSON objects clients receive (`system` / `chat`),
#   always carrying `room`.
