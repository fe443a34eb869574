import asyncio
import os
from datetime import datetime, timedelta, timezone
from math import pi
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("AUTH_BASE_URL", "https://auth.example.test")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

from config import SyncSettings  # noqa: E402
from errors import LocationUnavailableError, ProfileConflictError, StoreError  # noqa: E402
from models.profile_models import Profile  # noqa: E402

KM_PER_DEGREE_LAT = 6371.0 * pi / 180

JAKARTA = (-6.2088, 106.8456)


def north_of(origin, km):
    """A point km kilometers due north of origin."""
    return origin[0] + km / KM_PER_DEGREE_LAT, origin[1]


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class InMemoryProfileStore:
    """Stand-in for ProfileStore with the same uniqueness and filter rules."""

    def __init__(self):
        self.rows: Dict[str, Profile] = {}
        self.inserts = 0
        self.position_writes: List[tuple] = []
        self.presence_writes: List[tuple] = []
        self.fail_inserts = 0
        self.fail_fetches = 0
        self.fail_writes = False
        self.write_delay = 0.0
        self.candidate_delays: List[float] = []
        self.candidate_queries = 0

    def add(self, profile: Profile):
        self.rows[profile.id] = profile

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        await asyncio.sleep(0)
        if self.fail_fetches:
            self.fail_fetches -= 1
            raise StoreError("connection reset")
        row = self.rows.get(user_id)
        return row.model_copy() if row else None

    async def insert_profile(self, profile: Profile) -> Profile:
        await asyncio.sleep(0)
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise StoreError("connection reset")
        if profile.id in self.rows:
            raise ProfileConflictError(f"duplicate key value violates unique constraint ({profile.id})")
        self.rows[profile.id] = profile.model_copy()
        self.inserts += 1
        return profile.model_copy()

    async def update_position(self, user_id, latitude, longitude, now):
        await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise StoreError("network unreachable")
        self.position_writes.append((user_id, latitude, longitude, now))
        if user_id in self.rows:
            self.rows[user_id] = self.rows[user_id].model_copy(update={
                "latitude": latitude,
                "longitude": longitude,
                "location_updated_at": now,
                "last_online": now,
            })

    async def update_presence(self, user_id, is_online, now):
        await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise StoreError("network unreachable")
        self.presence_writes.append((user_id, is_online, now))
        if user_id in self.rows:
            self.rows[user_id] = self.rows[user_id].model_copy(update={
                "is_online": is_online,
                "last_online": now,
            })

    async def fetch_candidates(self, self_id, since, limit):
        delay = self.candidate_delays.pop(0) if self.candidate_delays else 0
        self.candidate_queries += 1
        matches = [
            row.model_copy() for row in self.rows.values()
            if row.id != self_id
            and row.is_online
            and row.latitude is not None and row.longitude is not None
            and row.location_updated_at is not None and row.location_updated_at >= since
        ]
        await asyncio.sleep(delay)
        return matches[:limit]

    async def update_profile(self, user_id, changes):
        await asyncio.sleep(0)
        row = self.rows.get(user_id)
        if row is None:
            return None
        self.rows[user_id] = Profile(**{**row.model_dump(), **changes})
        return self.rows[user_id].model_copy()


class StubIpLocator:
    def __init__(self, position=None):
        self.position = position
        self.calls = []

    async def locate(self, client_ip=None):
        self.calls.append(client_ip)
        if self.position is None:
            raise LocationUnavailableError("Reserved IP Address")
        return self.position


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryProfileStore()


@pytest.fixture
def settings():
    return SyncSettings(
        refresh_debounce_seconds=0,
        refresh_interval_seconds=0,
        geo_timeout_seconds=0,
        profile_retry_delay_seconds=0,
    )


def make_profile(user_id, position=None, updated_at=None, is_online=True, **extra):
    latitude, longitude = position if position else (None, None)
    return Profile(
        id=user_id,
        username=extra.pop("username", user_id),
        latitude=latitude,
        longitude=longitude,
        is_online=is_online,
        location_updated_at=updated_at,
        **extra
    )
