import logging
import time
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Callable, Optional

from encryption import encrypt_payload, decrypt_payload
from errors import CacheError
from models.location_models import LocationSample, LocationSource

logger = logging.getLogger(__name__)


class LocationCache:
    """
    Encrypted on-disk last-known position, one file per user.

    Entries older than ttl_seconds are ignored on read so a restart never
    reuses a position from a previous outing.
    """

    def __init__(self, base_dir: Path, ttl_seconds: float = 3600,
                 clock: Callable[[], float] = time.time):
        self._base_dir = Path(base_dir)
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def _path(self, user_id: str) -> Path:
        digest = sha256(user_id.encode("utf-8")).hexdigest()
        return self._base_dir / f"{digest}.loc"

    def save(self, user_id: str, sample: LocationSample) -> None:
        payload = {
            "lat": sample.latitude,
            "lon": sample.longitude,
            "ts": self._clock(),
            "source": sample.source.value,
        }
        path = self._path(user_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(encrypt_payload(payload), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            logger.error(f"Error caching location for user {user_id}: {e}")

    def load(self, user_id: str) -> Optional[LocationSample]:
        """Return the cached position if present and fresh."""
        path = self._path(user_id)
        if not path.exists():
            return None

        try:
            payload = decrypt_payload(path.read_text(encoding="utf-8"))
            cached_at = float(payload["ts"])
            latitude, longitude = float(payload["lat"]), float(payload["lon"])
            source = LocationSource(payload.get("source", LocationSource.GPS.value))
        except (OSError, CacheError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cached location for user {user_id}: {e}")
            return None

        if self._clock() - cached_at >= self._ttl_seconds:
            return None

        return LocationSample.create(
            latitude,
            longitude,
            source,
            captured_at=datetime.fromtimestamp(cached_at, tz=timezone.utc),
        )

    def clear(self, user_id: str) -> None:
        try:
            self._path(user_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error clearing cached location for user {user_id}: {e}")
