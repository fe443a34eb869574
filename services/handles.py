import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationHandle:
    """
    Idempotent stop handle returned by the long-running components.

    Calling it runs the component's stop logic once and returns whatever that
    logic returned (typically a task for a final write, or None). Repeated
    calls return the same value without stopping twice.
    """

    def __init__(self, on_cancel: Callable[[], Optional[asyncio.Task]]):
        self._on_cancel = on_cancel
        self._cancelled = False
        self._result: Optional[asyncio.Task] = None

    def __call__(self) -> Optional[asyncio.Task]:
        if not self._cancelled:
            self._cancelled = True
            self._result = self._on_cancel()
        return self._result

    @property
    def cancelled(self) -> bool:
        return self._cancelled
