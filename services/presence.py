import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Set

from errors import StoreError
from helpers.profile_store import ProfileStore
from services.handles import CancellationHandle, utcnow

logger = logging.getLogger(__name__)


class PresenceHeartbeat:
    """Keeps a profile marked online while running; marks it offline once on stop."""

    def __init__(self, store: ProfileStore, interval_seconds: float = 120,
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._writes: Set[asyncio.Task] = set()
        self.beats = 0

    def start(self, user_id: str) -> CancellationHandle:
        if self._task is not None:
            raise RuntimeError("Heartbeat already running")
        self._task = asyncio.create_task(self._run(user_id))
        return CancellationHandle(lambda: self._stop(user_id))

    async def _run(self, user_id: str):
        while True:
            # Writes run as their own tasks so stopping never cancels one mid-flight
            write = asyncio.create_task(self._mark(user_id, True))
            self._writes.add(write)
            write.add_done_callback(self._writes.discard)
            self.beats += 1
            await asyncio.sleep(self._interval_seconds)

    def _stop(self, user_id: str) -> asyncio.Task:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        in_flight = list(self._writes)
        return asyncio.create_task(self._go_offline(user_id, in_flight))

    async def _go_offline(self, user_id: str, in_flight):
        # An online write landing after this one would resurrect the user
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        await self._mark(user_id, False)

    async def _mark(self, user_id: str, is_online: bool) -> bool:
        try:
            await self._store.update_presence(user_id, is_online, self._clock())
            return True
        except StoreError as e:
            logger.error(f"Error updating online status for user {user_id}: {e}")
            return False
