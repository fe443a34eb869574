import asyncio
import threading

from models.location_models import LocationSample, LocationSource, PositionFix, SensorErrorReport
from services.geo_source import DevicePositionStream, GeoSource, REFERENCE_CITIES
from services.location_sync import LocationSyncPolicy

from conftest import JAKARTA, StubIpLocator, north_of


def _sample(position, clock):
    return LocationSample.create(position[0], position[1], LocationSource.GPS, clock())


def _policy(store, settings, clock, stream=None, ip_locator=None, **kwargs):
    stream = stream or DevicePositionStream(clock=clock)
    source = GeoSource(stream, ip_locator or StubIpLocator(), settings, clock=clock)
    return LocationSyncPolicy(store, source, settings, clock=clock, **kwargs), stream


def test_small_moves_within_interval_write_once(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        for step in range(1, 10):
            clock.advance(minutes=1)
            policy.handle_sample("u1", _sample(north_of(JAKARTA, 0.05 * step), clock))
        await policy.drain()
        stop()
        return policy

    policy = asyncio.run(main())

    assert len(store.position_writes) == 1
    assert store.position_writes[0][1:3] == JAKARTA
    # the displayed position still follows every sample
    assert policy.current_position.latitude > JAKARTA[0]


def test_stationary_sample_after_interval_writes(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        clock.advance(minutes=15)
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        clock.advance(seconds=1)
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        await policy.drain()
        stop()

    asyncio.run(main())

    assert len(store.position_writes) == 2
    assert store.position_writes[1][3] == clock.now


def test_move_beyond_threshold_writes_immediately(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        clock.advance(seconds=1)
        policy.handle_sample("u1", _sample(north_of(JAKARTA, 0.6), clock))
        await policy.drain()
        stop()

    asyncio.run(main())

    assert len(store.position_writes) == 2
    assert store.position_writes[1][1] > JAKARTA[0]


def test_distance_is_measured_from_last_push_not_last_sample(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        # three 0.2 km steps: each is small, but the third is 0.6 km from the push
        for step in (1, 2, 3):
            clock.advance(seconds=10)
            policy.handle_sample("u1", _sample(north_of(JAKARTA, 0.2 * step), clock))
        await policy.drain()
        stop()

    asyncio.run(main())

    assert len(store.position_writes) == 2


def test_failed_write_is_retried_by_next_sample(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        store.fail_writes = True
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        await policy.drain()
        assert policy.state is None

        store.fail_writes = False
        clock.advance(seconds=5)
        policy.handle_sample("u1", _sample(JAKARTA, clock))
        await policy.drain()
        stop()

    asyncio.run(main())

    assert len(store.position_writes) == 1


def test_no_writes_after_cancellation_but_in_flight_completes(store, settings, clock):
    store.write_delay = 0.01

    async def main():
        policy, _ = _policy(store, settings, clock)
        stop = policy.start("u1")
        task = policy.handle_sample("u1", _sample(JAKARTA, clock))
        stop()
        assert policy.handle_sample("u1", _sample(north_of(JAKARTA, 5), clock)) is None
        await task

    asyncio.run(main())

    assert len(store.position_writes) == 1


def test_sensor_error_falls_back_and_is_pushed(store, settings, clock):
    async def main():
        policy, stream = _policy(store, settings, clock)
        policy.start("u1")
        stream.report_error(SensorErrorReport(code="permission_denied"))
        stream.close()
        await policy._task
        await policy.drain()
        return policy

    policy = asyncio.run(main())

    assert policy.current_position.source == LocationSource.STATIC_FALLBACK
    cities = {(lat, lon) for _, lat, lon in REFERENCE_CITIES}
    assert len(store.position_writes) == 1
    assert store.position_writes[0][1:3] in cities


def test_device_fixes_flow_through_stream(store, settings, clock, tmp_path):
    from helpers.location_cache import LocationCache

    cache = LocationCache(tmp_path)
    seen = []

    async def main():
        policy, stream = _policy(store, settings, clock, location_cache=cache, on_position=seen.append)
        policy.start("u1")
        stream.publish(PositionFix(latitude=JAKARTA[0], longitude=JAKARTA[1]))
        stream.publish(PositionFix(latitude=JAKARTA[0], longitude=JAKARTA[1]))
        stream.close()
        await policy._task
        await policy.drain()

    asyncio.run(main())

    assert len(seen) == 2
    assert len(store.position_writes) == 1
    assert cache.load("u1").position == JAKARTA


def test_local_only_policy_never_writes(store, settings, clock):
    async def main():
        policy, _ = _policy(store, settings, clock, persist=False)
        stop = policy.start("u1")
        result = policy.handle_sample("u1", _sample(JAKARTA, clock))
        stop()
        return policy, result

    policy, result = asyncio.run(main())

    assert result is None
    assert store.position_writes == []
    assert policy.current_position.position == JAKARTA


class _ThreadRecordingCache:
    def __init__(self):
        self.saved = []
        self.threads = set()

    def save(self, user_id, sample):
        self.threads.add(threading.get_ident())
        self.saved.append(sample.position)


def test_cache_writes_run_off_the_event_loop(store, settings, clock):
    cache = _ThreadRecordingCache()
    loop_thread = threading.get_ident()

    async def main():
        policy, _ = _policy(store, settings, clock, location_cache=cache)
        stop = policy.start("u1")
        for step in range(5):
            policy.handle_sample("u1", _sample(north_of(JAKARTA, step), clock))
        await policy.drain()
        stop()

    asyncio.run(main())

    assert cache.saved
    assert loop_thread not in cache.threads
    # the newest sample is always the last one written
    assert cache.saved[-1] == north_of(JAKARTA, 4)
