import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Set, Tuple

from config import SyncSettings
from errors import StoreError
from geo import haversine
from helpers.avatar_cache import AvatarResolver
from helpers.change_feed import ChangeFeed
from helpers.profile_store import ProfileStore
from models.location_models import CandidateUser
from models.profile_models import Profile
from services.handles import CancellationHandle, utcnow

logger = logging.getLogger(__name__)


def build_view(rows: Sequence[Profile], origin: Tuple[float, float],
               max_distance_km: float, limit: int) -> List[CandidateUser]:
    """Distance-annotate rows, drop far ones, sort nearest first and truncate."""
    origin_lat, origin_lon = origin
    candidates = []
    for row in rows:
        if not row.has_position:
            continue
        distance = haversine(origin_lat, origin_lon, row.latitude, row.longitude)
        if distance > max_distance_km:
            continue
        candidates.append(CandidateUser(**row.model_dump(), distance_km=distance))

    # list.sort is stable: equal distances keep backend order
    candidates.sort(key=lambda c: c.distance_km)
    return candidates[:limit]


class ProximityIndex:
    """
    The "nearby users" view for one signed-in user.

    The view is rebuilt on demand, on a timer, and whenever the change feed
    reports a write to the profiles table. Feed bursts are coalesced with a
    trailing-edge debounce. A refresh only publishes if no refresh started
    after it has already published.
    """

    def __init__(self, store: ProfileStore, settings: SyncSettings,
                 avatars: Optional[AvatarResolver] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._settings = settings
        self._avatars = avatars
        self._clock = clock
        self.origin: Optional[Tuple[float, float]] = None
        self.view: List[CandidateUser] = []
        self.refreshed_at: Optional[datetime] = None
        self._self_id: Optional[str] = None
        self._generation = 0
        self._published_generation = 0
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._periodic: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()
        self.refresh_count = 0

    async def query(self, self_id: str, origin: Tuple[float, float]) -> List[CandidateUser]:
        """Compute a view around origin without publishing it."""
        since = self._clock() - timedelta(seconds=self._settings.staleness_window_seconds)
        rows = await self._store.fetch_candidates(self_id, since, self._settings.candidate_limit)
        candidates = build_view(rows, origin, self._settings.max_distance_km, self._settings.view_limit)

        if self._avatars is not None:
            candidates = [
                c.model_copy(update={"avatar_url": await self._avatars.resolve(c.avatar_url)})
                for c in candidates
            ]
        return candidates

    async def refresh(self, self_id: str, origin: Tuple[float, float]) -> List[CandidateUser]:
        self._generation += 1
        generation = self._generation
        self.refresh_count += 1

        candidates = await self.query(self_id, origin)

        if generation > self._published_generation:
            self._published_generation = generation
            self.view = candidates
            self.refreshed_at = self._clock()
            logger.debug(f"Loaded {len(candidates)} nearby users for {self_id}")
        return candidates

    def start(self, self_id: str, change_feed: Optional[ChangeFeed] = None) -> CancellationHandle:
        """Begin reacting to change events and the periodic timer."""
        self._self_id = self_id
        if change_feed is not None:
            self._unsubscribe = change_feed.subscribe(self.invalidate)
        if self._settings.refresh_interval_seconds > 0:
            self._periodic = asyncio.create_task(self._periodic_refresh())
        if self.origin is not None:
            self._spawn_refresh()
        return CancellationHandle(self._stop)

    def _stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
        self._self_id = None
        return None

    def set_origin(self, origin: Tuple[float, float]):
        """Move the view origin; the first known origin triggers a refresh."""
        first = self.origin is None
        self.origin = origin
        if first and self._self_id is not None:
            self._spawn_refresh()

    def invalidate(self, operation: str = ""):
        if self._self_id is None or self.origin is None:
            logger.debug("Skipping nearby refresh, no origin yet")
            return

        delay = self._settings.refresh_debounce_seconds
        if delay <= 0:
            self._spawn_refresh()
            return

        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = asyncio.get_running_loop().call_later(delay, self._spawn_refresh)

    def _spawn_refresh(self):
        self._debounce = None
        if self._self_id is None or self.origin is None:
            return
        task = asyncio.create_task(self._background_refresh(self._self_id, self.origin))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_refresh(self, self_id: str, origin: Tuple[float, float]):
        try:
            await self.refresh(self_id, origin)
        except StoreError as e:
            logger.error(f"Nearby users refresh failed: {e}")

    async def _periodic_refresh(self):
        while True:
            await asyncio.sleep(self._settings.refresh_interval_seconds)
            if self._self_id is not None and self.origin is not None:
                await self._background_refresh(self._self_id, self.origin)

    async def drain(self):
        """Wait for in-flight background refreshes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
