import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from starlette.concurrency import run_in_threadpool

from config import SyncSettings
from errors import SessionNotFoundError
from helpers.avatar_cache import AvatarResolver
from helpers.change_feed import ChangeFeed
from helpers.location_cache import LocationCache
from helpers.profile_store import ProfileStore
from models.location_models import LocationSample, WatchOptions
from models.profile_models import ProfileResult
from models.session_models import Identity, SessionInfo
from services.geo_source import DevicePositionStream, GeoSource, IpLocator
from services.handles import CancellationHandle, utcnow
from services.location_sync import LocationSyncPolicy
from services.presence import PresenceHeartbeat
from services.profile_reconciler import ProfileReconciler
from services.proximity_index import ProximityIndex

logger = logging.getLogger(__name__)


class PresenceSession:
    """Location sync, nearby view and heartbeat for one signed-in user."""

    def __init__(self, identity: Identity, profile_result: ProfileResult, store: ProfileStore,
                 change_feed: ChangeFeed, settings: SyncSettings, ip_locator: IpLocator,
                 location_cache: LocationCache, avatars: Optional[AvatarResolver] = None,
                 client_ip: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        self.identity = identity
        self.profile_result = profile_result
        self._change_feed = change_feed
        self._settings = settings
        self._location_cache = location_cache

        self.stream = DevicePositionStream(clock=clock)
        self.geo_source = GeoSource(self.stream, ip_locator, settings, client_ip=client_ip, clock=clock)
        self.index = ProximityIndex(store, settings, avatars=avatars, clock=clock)
        self.sync = LocationSyncPolicy(
            store, self.geo_source, settings,
            location_cache=location_cache,
            on_position=self._on_position,
            persist=not profile_result.is_degraded,
            clock=clock,
        )
        self.heartbeat = PresenceHeartbeat(store, settings.heartbeat_interval_seconds, clock=clock)

        self._index_handle: Optional[CancellationHandle] = None
        self._sync_handle: Optional[CancellationHandle] = None
        self._heartbeat_handle: Optional[CancellationHandle] = None

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def degraded(self) -> bool:
        return self.profile_result.is_degraded

    def _on_position(self, sample: LocationSample):
        self.index.set_origin(sample.position)

    @property
    def idle_seconds(self) -> float:
        """Seconds since the device last reported a fix, an error or reopened the session."""
        return self.stream.idle_seconds

    async def start(self):
        self._index_handle = self.index.start(self.user_id, self._change_feed)

        cached = await run_in_threadpool(self._location_cache.load, self.user_id)
        if cached is not None:
            logger.info(f"Reusing cached location for user {self.user_id}")
            self.index.set_origin(cached.position)

        self._sync_handle = self.sync.start(self.user_id)
        if not self.degraded:
            self._heartbeat_handle = self.heartbeat.start(self.user_id)

    def upgrade(self, profile_result: ProfileResult):
        """Switch a degraded session to normal once a real profile exists."""
        self.profile_result = profile_result
        if profile_result.is_degraded or self._heartbeat_handle is not None:
            return
        self.sync.persist = True
        self.sync.state = None
        self._heartbeat_handle = self.heartbeat.start(self.user_id)
        logger.info(f"Session for user {self.user_id} is no longer degraded")

    async def close(self, clear_cache: bool = True):
        """Stop tracking and mark the user offline."""
        if self._sync_handle is not None:
            self._sync_handle()
        if self._index_handle is not None:
            self._index_handle()
        self.stream.close()

        offline_write = self._heartbeat_handle() if self._heartbeat_handle is not None else None
        if offline_write is not None:
            await offline_write
        await self.sync.drain()

        if clear_cache:
            await run_in_threadpool(self._location_cache.clear, self.user_id)

    def info(self) -> SessionInfo:
        return SessionInfo(
            user_id=self.user_id,
            profile=self.profile_result.profile,
            status=self.profile_result.status,
            reason=self.profile_result.reason,
            origin=self.index.origin,
            watch_options=WatchOptions(
                enable_high_accuracy=self._settings.geo_high_accuracy,
                timeout_ms=int(self._settings.geo_timeout_seconds * 1000),
                maximum_age_ms=int(self._settings.geo_maximum_age_seconds * 1000),
            ),
        )


class SessionManager:
    """
    Open presence sessions keyed by user id.

    A session whose device has been silent for idle_heartbeats heartbeat
    intervals is closed as if the user had signed out.
    """

    def __init__(self, store: ProfileStore, change_feed: ChangeFeed, reconciler: ProfileReconciler,
                 settings: SyncSettings, ip_locator: IpLocator, location_cache: LocationCache,
                 avatars: Optional[AvatarResolver] = None, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._change_feed = change_feed
        self._reconciler = reconciler
        self._settings = settings
        self._ip_locator = ip_locator
        self._location_cache = location_cache
        self._avatars = avatars
        self._clock = clock
        self._sessions: Dict[str, PresenceSession] = {}
        self._watchdogs: Dict[str, asyncio.Task] = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self):
        return len(self._sessions)

    @property
    def idle_timeout_seconds(self) -> float:
        return self._settings.idle_heartbeats * self._settings.heartbeat_interval_seconds

    async def open(self, identity: Identity, client_ip: Optional[str] = None) -> PresenceSession:
        """Ensure the profile exists and start (or reuse) the caller's session."""
        existing = self._sessions.get(identity.user_id)
        if existing is not None:
            existing.stream.touch()
            if existing.degraded:
                await self.retry(identity)
            return existing

        result = await self._reconciler.ensure(identity.user_id, identity.email)
        if result.is_degraded:
            logger.warning(f"Starting degraded session for user {identity.user_id}: {result.reason}")

        # Another request may have opened the session while we were provisioning
        existing = self._sessions.get(identity.user_id)
        if existing is not None:
            return existing

        session = PresenceSession(
            identity, result, self._store, self._change_feed, self._settings,
            self._ip_locator, self._location_cache, avatars=self._avatars,
            client_ip=client_ip, clock=self._clock,
        )
        self._sessions[identity.user_id] = session
        await session.start()
        if self.idle_timeout_seconds > 0:
            self._watchdogs[identity.user_id] = asyncio.create_task(self._expire_when_idle(session))
        logger.info(f"Opened presence session for user {identity.user_id}")
        return session

    async def _expire_when_idle(self, session: PresenceSession):
        timeout = self.idle_timeout_seconds
        while True:
            remaining = timeout - session.idle_seconds
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        if self._sessions.get(session.user_id) is not session:
            return
        logger.warning(f"Closing idle session for user {session.user_id} after {session.idle_seconds:.0f}s")
        self._watchdogs.pop(session.user_id, None)
        self._sessions.pop(session.user_id, None)
        await session.close()

    def _stop_watchdog(self, user_id: str):
        watchdog = self._watchdogs.pop(user_id, None)
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()

    def get(self, user_id: str) -> PresenceSession:
        session = self._sessions.get(user_id)
        if session is None:
            raise SessionNotFoundError(f"No open session for user {user_id}")
        return session

    async def retry(self, identity: Identity) -> PresenceSession:
        """Re-run profile provisioning for a degraded session."""
        session = self.get(identity.user_id)
        if session.degraded:
            session.upgrade(await self._reconciler.ensure(identity.user_id, identity.email))
        return session

    async def close(self, user_id: str):
        session = self._sessions.pop(user_id, None)
        if session is None:
            raise SessionNotFoundError(f"No open session for user {user_id}")
        self._stop_watchdog(user_id)
        await session.close()
        logger.info(f"Closed presence session for user {user_id}")

    async def close_all(self):
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for user_id in list(self._watchdogs):
            self._stop_watchdog(user_id)
        results = await asyncio.gather(
            *(session.close(clear_cache=False) for session in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing session for user {session.user_id}: {result}")
