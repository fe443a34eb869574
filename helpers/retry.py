import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass
class RetryOutcome:
    """Result of a bounded retry: either a value or the last error."""
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    attempts: int,
    delay_seconds: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> RetryOutcome:
    """
    Run operation up to `attempts` times with a fixed delay between tries.

    Errors not listed in retry_on propagate immediately. Never raises for
    errors in retry_on; the caller inspects the returned outcome instead.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            value = await operation()
            return RetryOutcome(value=value, attempts=attempt)
        except retry_on as e:
            last_error = e
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await asyncio.sleep(delay_seconds)

    return RetryOutcome(error=last_error, attempts=attempts)
