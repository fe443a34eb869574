import asyncio

import pytest

from errors import StoreError
from helpers.retry import retry_async


def test_retry_returns_value_after_transient_failure():
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) == 1:
            raise StoreError("timeout")
        return "row"

    outcome = asyncio.run(retry_async(operation, attempts=2, delay_seconds=0, retry_on=(StoreError,)))

    assert outcome.succeeded
    assert outcome.value == "row"
    assert outcome.attempts == 2


def test_retry_reports_last_error_when_exhausted():
    async def operation():
        raise StoreError("still down")

    outcome = asyncio.run(retry_async(operation, attempts=3, delay_seconds=0, retry_on=(StoreError,)))

    assert not outcome.succeeded
    assert isinstance(outcome.error, StoreError)
    assert outcome.attempts == 3


def test_retry_propagates_unlisted_errors():
    async def operation():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        asyncio.run(retry_async(operation, attempts=3, delay_seconds=0, retry_on=(StoreError,)))


def test_retry_requires_an_attempt():
    async def operation():
        return None

    with pytest.raises(ValueError):
        asyncio.run(retry_async(operation, attempts=0, delay_seconds=0))
