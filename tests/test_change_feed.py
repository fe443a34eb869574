import asyncio

from helpers.change_feed import ChangeFeed, RECONNECTED


class FakeListenConnection:
    def __init__(self):
        self.listeners = {}
        self.termination_listeners = []

    async def add_listener(self, channel, callback):
        self.listeners[channel] = callback

    async def remove_listener(self, channel, callback):
        self.listeners.pop(channel, None)

    def add_termination_listener(self, callback):
        self.termination_listeners.append(callback)

    def remove_termination_listener(self, callback):
        self.termination_listeners.remove(callback)

    def terminate(self):
        for callback in list(self.termination_listeners):
            callback(self)


class FakePool:
    def __init__(self, failures=0):
        self.failures = failures
        self.connections = []
        self.released = []

    async def acquire(self):
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("could not connect to server")
        conn = FakeListenConnection()
        self.connections.append(conn)
        return conn

    async def release(self, conn):
        self.released.append(conn)


def test_notifications_reach_subscribers():
    pool = FakePool()
    feed = ChangeFeed()
    seen = []
    feed.subscribe(seen.append)

    async def main():
        await feed.start(pool)
        [conn] = pool.connections
        conn.listeners["profiles_changes"](conn, 42, "profiles_changes", "UPDATE")
        await feed.stop()

    asyncio.run(main())

    assert seen == ["UPDATE"]
    assert pool.released == pool.connections


def test_lost_connection_is_reacquired():
    pool = FakePool()
    feed = ChangeFeed(reconnect_delay_seconds=0)
    seen = []
    feed.subscribe(seen.append)

    async def main():
        await feed.start(pool)
        first = pool.connections[0]
        first.terminate()
        assert not feed.listening
        await feed._reconnect_task
        listening = feed.listening
        await feed.stop()
        return first, listening

    first, listening = asyncio.run(main())

    assert listening
    assert len(pool.connections) == 2
    assert "profiles_changes" in pool.connections[1].listeners
    assert pool.released[0] is first
    # views refresh once to catch up on what was missed
    assert seen == [RECONNECTED]


def test_reconnect_gives_up_after_bounded_attempts():
    pool = FakePool()
    feed = ChangeFeed(reconnect_attempts=3, reconnect_delay_seconds=0)

    async def main():
        await feed.start(pool)
        pool.failures = 10
        pool.connections[0].terminate()
        await feed._reconnect_task
        return feed.listening

    assert asyncio.run(main()) is False
    assert pool.failures == 7


def test_no_reconnect_after_stop():
    pool = FakePool()
    feed = ChangeFeed(reconnect_delay_seconds=0)

    async def main():
        await feed.start(pool)
        conn = pool.connections[0]
        await feed.stop()
        conn.terminate()
        return feed._reconnect_task

    assert asyncio.run(main()) is None
    assert len(pool.connections) == 1
