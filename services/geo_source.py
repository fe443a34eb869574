import asyncio
import logging
import random
import time
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Tuple, Union
import requests
from starlette.concurrency import run_in_threadpool

from config import SyncSettings
from errors import LocationUnavailableError
from models.location_models import (
    LocationSample, LocationSource, PositionFix, SensorErrorReport, SensorErrorCode
)
from services.handles import utcnow

logger = logging.getLogger(__name__)

# Coarse last-resort positions, one per reference city.
REFERENCE_CITIES = [
    ("Jakarta", -6.2088, 106.8456),
    ("Bandung", -6.9175, 107.6191),
    ("Surabaya", -7.2504, 112.7688),
    ("Bogor", -6.5942, 106.7890),
    ("Semarang", -6.9667, 110.4167),
    ("Palangkaraya", -0.7893, 113.9213),
    ("Mamuju", -2.5489, 118.0149),
    ("Makassar", -5.1477, 119.4327),
    ("Manado", 1.4748, 124.8426),
]

_CLOSED = object()

DeviceEvent = Union[PositionFix, SensorErrorReport]


class DevicePositionStream:
    """
    Fixes and sensor errors reported by one device, in arrival order.

    Each event is stamped with the server time it arrived; device clocks are
    not trusted for freshness.
    """

    def __init__(self, maxsize: int = 100, clock: Callable[[], datetime] = utcnow):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._clock = clock
        self.last_activity = time.monotonic()

    def _put(self, item):
        if self._queue.full():
            # Keep the newest fixes when the consumer falls behind
            self._queue.get_nowait()
        self._queue.put_nowait((self._clock(), item))

    def touch(self):
        """Record device activity that carried no event."""
        self.last_activity = time.monotonic()

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    def publish(self, fix: PositionFix):
        self.touch()
        self._put(fix)

    def report_error(self, report: SensorErrorReport):
        self.touch()
        self._put(report)

    def close(self):
        self._put(_CLOSED)

    async def events(self, first_timeout: Optional[float] = None) -> AsyncIterator[Tuple[datetime, DeviceEvent]]:
        """
        Yield (received_at, event) pairs until the stream is closed.

        If no event arrives within first_timeout seconds of the first wait, a
        TIMEOUT sensor error is yielded in its place.
        """
        first = True
        while True:
            if first and first_timeout:
                try:
                    received_at, event = await asyncio.wait_for(self._queue.get(), first_timeout)
                except asyncio.TimeoutError:
                    received_at = self._clock()
                    event = SensorErrorReport(
                        code=SensorErrorCode.TIMEOUT,
                        message=f"No position fix within {first_timeout:g}s"
                    )
            else:
                received_at, event = await self._queue.get()
            first = False

            if event is _CLOSED:
                return
            yield received_at, event


class IpLocator:
    """Coarse position lookup from a public IP geolocation endpoint."""

    def __init__(self, base_url: str = "https://ipapi.co", timeout: float = 10):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _lookup(self, client_ip: Optional[str]) -> Tuple[float, float]:
        url = f"{self._base_url}/{client_ip}/json/" if client_ip else f"{self._base_url}/json/"
        response = requests.get(url, timeout=self._timeout)
        response.raise_for_status()
        data = response.json()

        latitude, longitude = data.get("latitude"), data.get("longitude")
        if latitude is None or longitude is None:
            raise LocationUnavailableError(data.get("reason") or "response carried no coordinates")
        return float(latitude), float(longitude)

    async def locate(self, client_ip: Optional[str] = None) -> Tuple[float, float]:
        try:
            return await run_in_threadpool(self._lookup, client_ip)
        except (requests.RequestException, ValueError, TypeError) as e:
            raise LocationUnavailableError(f"IP lookup failed: {e}")


class GeoSource:
    """
    Position samples for one device.

    Device fixes become GPS samples. A sensor error is replaced by an IP
    lookup sample, or by a random reference city when that lookup fails too,
    so every error still yields a sample.
    """

    def __init__(self, stream: DevicePositionStream, ip_locator: IpLocator,
                 settings: SyncSettings, client_ip: Optional[str] = None,
                 rng: random.Random = None, clock: Callable[[], datetime] = utcnow):
        self._stream = stream
        self._ip_locator = ip_locator
        self._settings = settings
        self._client_ip = client_ip
        self._rng = rng or random.Random()
        self._clock = clock

    async def fallback_sample(self) -> LocationSample:
        try:
            latitude, longitude = await self._ip_locator.locate(self._client_ip)
            logger.info("Using IP-based location fallback")
            return LocationSample.create(latitude, longitude, LocationSource.IP_FALLBACK, self._clock())
        except (LocationUnavailableError, ValueError) as e:
            logger.warning(f"IP fallback failed, using reference city: {e}")

        city, latitude, longitude = self._rng.choice(REFERENCE_CITIES)
        logger.info(f"Using static fallback location ({city})")
        return LocationSample.create(latitude, longitude, LocationSource.STATIC_FALLBACK, self._clock())

    def _is_stale(self, received_at: datetime, now: datetime) -> bool:
        """True when a fix waited longer than the maximum sample age before being consumed."""
        age = (now - received_at).total_seconds()
        return age > self._settings.geo_maximum_age_seconds

    async def samples(self) -> AsyncIterator[LocationSample]:
        async for received_at, event in self._stream.events(first_timeout=self._settings.geo_timeout_seconds):
            if isinstance(event, SensorErrorReport):
                logger.warning(f"Location tracking error: {event.code.value} {event.message or ''}".rstrip())
                yield await self.fallback_sample()
                continue

            now = self._clock()
            if self._is_stale(received_at, now):
                logger.debug(f"Dropping fix received at {received_at.isoformat()}")
                continue

            if event.captured_at is not None:
                skew = (received_at - event.captured_at).total_seconds()
                if abs(skew) > self._settings.geo_maximum_age_seconds:
                    logger.debug(f"Device clock differs from server by {skew:.0f}s")

            try:
                sample = LocationSample.create(event.latitude, event.longitude, LocationSource.GPS, received_at)
            except ValueError as e:
                logger.warning(f"Dropping invalid fix: {e}")
                continue
            yield sample
