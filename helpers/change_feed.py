import asyncio
import logging
from typing import Callable, Dict, Optional
import asyncpg

from helpers.retry import retry_async

logger = logging.getLogger(__name__)

PROFILES_CHANNEL = "profiles_changes"

# Published to subscribers after a reconnect; events during the gap were missed
RECONNECTED = "RECONNECT"

Subscriber = Callable[[str], None]


class ChangeFeed:
    """
    Fan-out of profiles table change notifications.

    A single dedicated connection LISTENs on the channel; every subscriber is
    called with the operation name (INSERT/UPDATE/DELETE) for each event. The
    payload is only an invalidation signal. If the connection is lost it is
    re-acquired from the pool.
    """

    def __init__(self, channel: str = PROFILES_CHANNEL, reconnect_attempts: int = 5,
                 reconnect_delay_seconds: float = 2.0):
        self.channel = channel
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_token = 0
        self._conn: Optional[asyncpg.Connection] = None
        self._pool: Optional[asyncpg.Pool] = None
        self._on_terminated: Optional[Callable] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopping = False

    async def start(self, pool: asyncpg.Pool):
        """Acquire a connection from the pool and start listening."""
        self._pool = pool
        self._stopping = False
        await self._listen()
        logger.info(f"Listening for profile changes on '{self.channel}'")

    async def _listen(self):
        conn = await self._pool.acquire()
        try:
            await conn.add_listener(self.channel, self._on_notify)
        except BaseException:
            await self._pool.release(conn)
            raise

        def on_terminated(_connection):
            self._connection_lost(conn)

        conn.add_termination_listener(on_terminated)
        self._conn = conn
        self._on_terminated = on_terminated

    def _connection_lost(self, conn):
        if self._stopping or conn is not self._conn:
            return
        logger.warning(f"Change feed connection on '{self.channel}' lost, reconnecting")
        self._conn = None
        self._on_terminated = None
        self._reconnect_task = asyncio.create_task(self._reconnect(conn))

    async def _reconnect(self, lost):
        try:
            await self._pool.release(lost)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.debug(f"Releasing lost change feed connection failed: {e}")

        outcome = await retry_async(
            self._listen,
            attempts=self._reconnect_attempts,
            delay_seconds=self._reconnect_delay_seconds,
            retry_on=(asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError),
            label="Change feed reconnect",
        )
        if not outcome.succeeded:
            logger.error(f"Change feed on '{self.channel}' is down, views rely on periodic refresh: {outcome.error}")
            return

        logger.info(f"Change feed on '{self.channel}' reconnected")
        self.publish(RECONNECTED)

    async def stop(self):
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self._conn is None:
            return
        try:
            if self._on_terminated is not None:
                self._conn.remove_termination_listener(self._on_terminated)
            await self._conn.remove_listener(self.channel, self._on_notify)
        finally:
            await self._pool.release(self._conn)
            self._conn = None
            self._on_terminated = None

    def _on_notify(self, connection, pid, channel, payload):
        self.publish(payload or "")

    def publish(self, operation: str):
        for token, callback in list(self._subscribers.items()):
            try:
                callback(operation)
            except Exception as e:
                logger.error(f"Change subscriber {token} failed: {e}")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns a function that removes it."""
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback

        def unsubscribe():
            self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def listening(self) -> bool:
        return self._conn is not None
