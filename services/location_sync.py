import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Set

from starlette.concurrency import run_in_threadpool

from config import SyncSettings
from errors import StoreError
from geo import haversine
from helpers.location_cache import LocationCache
from helpers.profile_store import ProfileStore
from models.location_models import LocationSample, SyncState
from services.geo_source import GeoSource
from services.handles import CancellationHandle, utcnow

logger = logging.getLogger(__name__)


class LocationSyncPolicy:
    """
    Decides which position samples get written to the caller's profile row.

    A sample is pushed when it is the first since start, when it moved more
    than push_distance_km from the last pushed position, or when the last push
    is older than push_max_interval_seconds. Everything else only moves the
    locally displayed position.
    """

    def __init__(self, store: ProfileStore, source: GeoSource, settings: SyncSettings,
                 location_cache: Optional[LocationCache] = None,
                 on_position: Optional[Callable[[LocationSample], None]] = None,
                 persist: bool = True, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._source = source
        self._settings = settings
        self._location_cache = location_cache
        self._on_position = on_position
        self._clock = clock
        self.persist = persist
        self.state: Optional[SyncState] = None
        self.current_position: Optional[LocationSample] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._cache_task: Optional[asyncio.Task] = None
        self._cache_latest: Optional[LocationSample] = None
        self._stopped = True

    def should_push(self, sample: LocationSample, now: datetime) -> bool:
        state = self.state
        if state is None:
            return True

        last_lat, last_lon = state.last_persisted_location
        moved_km = haversine(last_lat, last_lon, sample.latitude, sample.longitude)
        if moved_km > self._settings.push_distance_km:
            return True

        elapsed = (now - state.last_persisted_at).total_seconds()
        return elapsed > self._settings.push_max_interval_seconds

    def start(self, user_id: str) -> CancellationHandle:
        if not self._stopped:
            raise RuntimeError("Location tracking already running")

        self._stopped = False
        self.state = None
        self._task = asyncio.create_task(self._run(user_id))
        logger.info(f"Started location tracking for user {user_id}")
        return CancellationHandle(self._stop)

    def _stop(self):
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.state = None
        return None

    async def _run(self, user_id: str):
        async for sample in self._source.samples():
            if self._stopped:
                break
            self.handle_sample(user_id, sample)

    def handle_sample(self, user_id: str, sample: LocationSample) -> Optional[asyncio.Task]:
        """Apply one sample; returns the push task when a write was started."""
        if self._stopped:
            return None

        now = self._clock()
        self.current_position = sample
        if self._location_cache is not None:
            self._cache_later(user_id, sample)
        if self._on_position is not None:
            try:
                self._on_position(sample)
            except Exception as e:
                logger.error(f"Position listener failed: {e}")

        if not self.persist or not self.should_push(sample, now):
            return None

        previous = self.state
        pushed = SyncState(last_persisted_location=sample.position, last_persisted_at=now)
        self.state = pushed

        reason = "first" if previous is None else "movement/periodic"
        task = asyncio.create_task(self._push(user_id, sample, now, previous, pushed, reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _push(self, user_id: str, sample: LocationSample, now: datetime,
                    previous: Optional[SyncState], pushed: SyncState, reason: str):
        try:
            await self._store.update_position(user_id, sample.latitude, sample.longitude, now)
            logger.info(f"Location updated for user {user_id} ({reason}, {sample.source.value})")
        except StoreError as e:
            logger.error(f"Location update failed for user {user_id}: {e}")
            # Let the next sample try again
            if self.state is pushed:
                self.state = previous

    def _cache_later(self, user_id: str, sample: LocationSample):
        self._cache_latest = sample
        if self._cache_task is None or self._cache_task.done():
            self._cache_task = asyncio.create_task(self._flush_cache(user_id))
            self._pending.add(self._cache_task)
            self._cache_task.add_done_callback(self._pending.discard)

    async def _flush_cache(self, user_id: str):
        # One writer per policy so an older sample never lands after a newer one
        while self._cache_latest is not None:
            sample, self._cache_latest = self._cache_latest, None
            await run_in_threadpool(self._location_cache.save, user_id, sample)

    async def drain(self):
        """Wait for in-flight pushes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
