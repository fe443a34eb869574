import asyncio

from services.presence import PresenceHeartbeat


def test_heartbeat_marks_online_then_offline_once(store, clock):
    async def main():
        heartbeat = PresenceHeartbeat(store, interval_seconds=0.02, clock=clock)
        stop = heartbeat.start("u1")
        await asyncio.sleep(0.07)
        offline = stop()
        assert stop() is offline
        await offline
        return heartbeat

    heartbeat = asyncio.run(main())

    flags = [is_online for _, is_online, _ in store.presence_writes]
    assert flags[0] is True
    assert flags[-1] is False
    assert flags.count(False) == 1
    assert heartbeat.beats >= 2


def test_offline_write_lands_after_in_flight_online_write(store, clock):
    store.write_delay = 0.03

    async def main():
        heartbeat = PresenceHeartbeat(store, interval_seconds=60, clock=clock)
        stop = heartbeat.start("u1")
        await asyncio.sleep(0)
        await stop()

    asyncio.run(main())

    assert [is_online for _, is_online, _ in store.presence_writes] == [True, False]


def test_failed_writes_do_not_stop_the_heartbeat(store, clock):
    store.fail_writes = True

    async def main():
        heartbeat = PresenceHeartbeat(store, interval_seconds=0.01, clock=clock)
        stop = heartbeat.start("u1")
        await asyncio.sleep(0.05)
        await stop()
        return heartbeat

    heartbeat = asyncio.run(main())

    assert heartbeat.beats >= 2
    assert store.presence_writes == []
