import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import asyncpg

from errors import ProfileConflictError, StoreError
from models.profile_models import Profile, PROFILE_COLUMNS

logger = logging.getLogger(__name__)

CANDIDATE_COLUMNS = (
    "id, username, avatar_url, age, bio, interests, location, is_online, "
    "last_online, latitude, longitude, gender, location_updated_at"
)

# Columns a user may edit through the profile API.
EDITABLE_COLUMNS = ("username", "gender", "avatar_url", "age", "bio", "interests", "location")


class ProfileStore:
    """All reads and writes against the profiles table."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self):
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise ProfileConflictError(str(e))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise StoreError(f"{type(e).__name__}: {e}")

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM profiles WHERE id = $1", user_id)
        return Profile.from_row(row) if row else None

    async def insert_profile(self, profile: Profile) -> Profile:
        """Insert a new profile row; raises ProfileConflictError if the id exists."""
        query = f"""
        INSERT INTO profiles ({", ".join(PROFILE_COLUMNS)})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14)
        RETURNING *;
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                profile.id,
                profile.username,
                profile.gender.value,
                profile.avatar_url,
                profile.latitude,
                profile.longitude,
                profile.is_online,
                profile.last_online,
                profile.location_updated_at,
                profile.age,
                profile.bio,
                json.dumps(profile.interests),
                profile.location,
                profile.created_at,
            )
        if row is None:
            raise StoreError(f"Insert returned no row for profile {profile.id}")
        return Profile.from_row(row)

    async def update_position(self, user_id: str, latitude: float, longitude: float, now: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE profiles
                SET latitude = $2, longitude = $3, location_updated_at = $4, last_online = $4
                WHERE id = $1
                """,
                user_id, latitude, longitude, now
            )

    async def update_presence(self, user_id: str, is_online: bool, now: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE profiles SET is_online = $2, last_online = $3 WHERE id = $1",
                user_id, is_online, now
            )

    async def fetch_candidates(self, self_id: str, since: datetime, limit: int) -> List[Profile]:
        """Online users other than self_id with a position written at or after since."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CANDIDATE_COLUMNS} FROM profiles
                WHERE id <> $1
                  AND is_online = TRUE
                  AND latitude IS NOT NULL AND longitude IS NOT NULL
                  AND location_updated_at >= $2
                LIMIT $3
                """,
                self_id, since, limit
            )
        return [Profile.from_row(row) for row in rows]

    async def update_profile(self, user_id: str, changes: dict) -> Optional[Profile]:
        """Apply user edits; returns None when no row exists for user_id."""
        fields = [name for name in EDITABLE_COLUMNS if name in changes]
        if not fields:
            return await self.fetch_profile(user_id)

        assignments = []
        values = [user_id]
        for name in fields:
            value = changes[name]
            if name == "interests":
                values.append(json.dumps(value) if value is not None else None)
                assignments.append(f"{name} = ${len(values)}::jsonb")
            else:
                values.append(value)
                assignments.append(f"{name} = ${len(values)}")

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE profiles SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
                *values
            )
        return Profile.from_row(row) if row else None


async def init_db(pool: asyncpg.Pool, channel: str):
    """Initialize the profiles table and its change-notification trigger."""
    async with pool.acquire() as conn:
        await conn.execute('''
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            username TEXT,
            gender TEXT NOT NULL DEFAULT 'male',
            avatar_url TEXT,
            latitude DOUBLE PRECISION,
            longitude DOUBLE PRECISION,
            is_online BOOLEAN NOT NULL DEFAULT FALSE,
            last_online TIMESTAMP WITH TIME ZONE,
            location_updated_at TIMESTAMP WITH TIME ZONE,
            age INTEGER,
            bio TEXT,
            interests JSONB,
            location TEXT,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT valid_gender CHECK (gender IN ('male', 'female')),
            CONSTRAINT position_both_or_neither CHECK ((latitude IS NULL) = (longitude IS NULL))
        );
        ''')

        await conn.execute('''
            CREATE INDEX IF NOT EXISTS profiles_online_fresh
            ON profiles (location_updated_at)
            WHERE is_online AND latitude IS NOT NULL;
        ''')

        # Row trigger feeding the change-notification channel
        await conn.execute(f'''
            CREATE OR REPLACE FUNCTION notify_profiles_change() RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify('{channel}', TG_OP);
                RETURN NULL;
            END;
            $$ LANGUAGE plpgsql;
        ''')
        await conn.execute('''
            DROP TRIGGER IF EXISTS profiles_change_notify ON profiles;
        ''')
        await conn.execute('''
            CREATE TRIGGER profiles_change_notify
            AFTER INSERT OR UPDATE OR DELETE ON profiles
            FOR EACH ROW EXECUTE FUNCTION notify_profiles_change();
        ''')
