import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", 30))
PUBSUB_POLL_TIMEOUT = float(os.getenv("PUBSUB_POLL_TIMEOUT", 1.0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
