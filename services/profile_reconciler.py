import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from errors import ProfileConflictError, StoreError
from helpers.profile_store import ProfileStore
from helpers.retry import retry_async
from models.profile_models import Profile, ProfileResult, new_profile
from services.handles import utcnow

logger = logging.getLogger(__name__)


class ProfileReconciler:
    """
    Makes sure exactly one profile row exists per identity.

    Callers racing on the same identity in this process share one attempt.
    Races across processes are settled by the primary key: the loser sees a
    conflict and re-reads the winner's row. When the backend keeps failing,
    the caller gets a degraded, non-persisted profile instead of an error.
    """

    def __init__(self, store: ProfileStore, retry_attempts: int = 2,
                 retry_delay_seconds: float = 2.0,
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._retry_attempts = retry_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}

    async def ensure(self, identity: str, email: Optional[str]) -> ProfileResult:
        task = self._inflight.get(identity)
        if task is None:
            task = asyncio.ensure_future(self._ensure(identity, email))
            self._inflight[identity] = task

            def _forget(done, identity=identity):
                if self._inflight.get(identity) is done:
                    del self._inflight[identity]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _ensure(self, identity: str, email: Optional[str]) -> ProfileResult:
        existing = await self._fetch(identity)
        if existing is not None:
            logger.info(f"Profile already exists for {identity}")
            return ProfileResult.ok(await self._mark_online(existing))

        logger.info(f"Creating new user profile for {identity}")
        outcome = await retry_async(
            lambda: self._create(identity, email),
            attempts=self._retry_attempts,
            delay_seconds=self._retry_delay_seconds,
            retry_on=(StoreError,),
            label=f"Profile creation for {identity}",
        )
        if outcome.succeeded:
            return ProfileResult.ok(outcome.value)

        logger.error(f"Giving up on profile creation for {identity}, using temporary profile")
        return ProfileResult.degraded(
            new_profile(identity, email, self._clock()),
            reason=f"profile could not be created: {outcome.error}",
        )

    async def _fetch(self, identity: str) -> Optional[Profile]:
        try:
            return await self._store.fetch_profile(identity)
        except StoreError as e:
            logger.error(f"Error checking profile for {identity}: {e}")
            return None

    async def _create(self, identity: str, email: Optional[str]) -> Profile:
        try:
            return await self._store.insert_profile(new_profile(identity, email, self._clock()))
        except ProfileConflictError:
            logger.info(f"Profile for {identity} created concurrently, fetching existing")

        existing = await self._store.fetch_profile(identity)
        if existing is None:
            raise StoreError(f"Profile {identity} conflicted on insert but could not be read")
        return await self._mark_online(existing)

    async def _mark_online(self, profile: Profile) -> Profile:
        now = self._clock()
        try:
            await self._store.update_presence(profile.id, True, now)
        except StoreError as e:
            logger.error(f"Error updating online status for {profile.id}: {e}")
        return profile.model_copy(update={"is_online": True, "last_online": now})
