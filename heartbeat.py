import asyncio
from contextlib import suppress
from typing import Optional, Set

from logging_config import get_logger
from session import ChatSession

logger = get_logger(__name__)


class HeartbeatMonitor:
    """Periodic liveness sweep over every connection held by this instance.

    Each sweep terminates sessions that did not answer the previous probe,
    then clears the liveness flag on the rest and probes them again. A dead
    peer is therefore reclaimed within two intervals.
    """

    def __init__(self, interval: float = 30.0):
        self.interval = interval
        self.sessions: Set[ChatSession] = set()
        self._task: Optional[asyncio.Task] = None

    def track(self, session: ChatSession) -> None:
        self.sessions.add(session)

    def untrack(self, session: ChatSession) -> None:
        self.sessions.discard(session)

    async def sweep(self) -> None:
        stale = []
        probes = []
        for session in list(self.sessions):
            if not session.is_alive:
                stale.append(session)
                continue
            session.is_alive = False
            probes.append(session.ping())

        for session in stale:
            self.untrack(session)
            await session.terminate()

        if probes:
            await asyncio.gather(*probes, return_exceptions=True)
        logger.debug(f"Heartbeat sweep: probed {len(probes)}, terminated {len(stale)}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Heartbeat monitor started (interval {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Heartbeat monitor stopped")
