from contextlib import asynccontextmanager
from typing import Callable, Optional

import redis
import redis.asyncio as aioredis
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisPubSubBridge
from constants import HEARTBEAT_INTERVAL, LOG_FILE, LOG_LEVEL, PUBSUB_POLL_TIMEOUT, REDIS_URL
from heartbeat import HeartbeatMonitor
from logging_config import get_logger, setup_logging
from registry import ConnectionRegistry
from routers.rooms import rooms_router
from session import ChatSession

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def default_redis_factory() -> aioredis.Redis:
    return aioredis.Redis.from_url(REDIS_URL, decode_responses=True)


def create_app(
    redis_factory: Optional[Callable[[], aioredis.Redis]] = None,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    poll_timeout: float = PUBSUB_POLL_TIMEOUT,
) -> FastAPI:
    """Build the relay app.

    The lifespan owns every piece of per-instance state: the publish and
    subscribe Redis clients, the connection registry, the pub/sub bridge and
    the heartbeat monitor. They live on ``app.state`` until shutdown.
    """
    make_redis = redis_factory or default_redis_factory

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 1 pub, 1 sub
        publisher = make_redis()
        subscriber = make_redis()
        try:
            await publisher.ping()
            await subscriber.ping()
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            raise
        logger.info("Redis publish and subscribe clients connected")

        registry = ConnectionRegistry()
        bridge = RedisPubSubBridge(publisher, subscriber, registry, poll_timeout=poll_timeout)
        heartbeat = HeartbeatMonitor(interval=heartbeat_interval)

        app.state.registry = registry
        app.state.bridge = bridge
        app.state.heartbeat = heartbeat

        heartbeat.start()
        try:
            yield
        finally:
            await heartbeat.stop()
            await bridge.close()
            await publisher.aclose()
            await subscriber.aclose()
            logger.info("Relay shut down")

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Relay endpoint: one JSON object per text frame, handled in receipt order."""
        state = websocket.app.state

        await websocket.accept()
        session = ChatSession(websocket, state.registry, state.bridge)
        state.heartbeat.track(session)
        logger.info(f"WebSocket connection accepted: {session.connection_id}")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket disconnected normally for connection {session.connection_id}")
                    break

                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                await session.handle_text(raw)
        finally:
            state.heartbeat.untrack(session)
            await session.disconnect()

    logger.info("FastAPI application initialized")
    return app


app = create_app()
