import asyncio

from models.profile_models import Gender, ProfileStatus
from services.profile_reconciler import ProfileReconciler

from conftest import make_profile


def _reconciler(store, clock, **kwargs):
    kwargs.setdefault("retry_delay_seconds", 0)
    return ProfileReconciler(store, clock=clock, **kwargs)


def test_existing_profile_is_returned_online(store, clock):
    store.add(make_profile("u1", is_online=False, username="andi"))

    result = asyncio.run(_reconciler(store, clock).ensure("u1", "andi@example.com"))

    assert result.status == ProfileStatus.OK
    assert result.profile.username == "andi"
    assert result.profile.is_online is True
    assert store.inserts == 0
    assert store.presence_writes == [("u1", True, clock.now)]


def test_new_profile_gets_defaults(store, clock):
    result = asyncio.run(_reconciler(store, clock).ensure("u1", "siti.rahma@example.com"))

    assert result.status == ProfileStatus.OK
    profile = store.rows["u1"]
    assert profile.username == "siti.rahma"
    assert profile.gender == Gender.MALE
    assert profile.latitude is None and profile.longitude is None
    assert profile.is_online is True
    assert store.inserts == 1


def test_username_falls_back_to_identity_prefix(store, clock):
    result = asyncio.run(_reconciler(store, clock).ensure("0f3a9c12-aaaa-bbbb", None))

    assert result.profile.username == "user_0f3a9c12"


def test_concurrent_calls_share_one_attempt(store, clock):
    reconciler = _reconciler(store, clock)

    async def main():
        return await asyncio.gather(
            reconciler.ensure("u1", "a@example.com"),
            reconciler.ensure("u1", "a@example.com"),
        )

    first, second = asyncio.run(main())

    assert store.inserts == 1
    assert first.profile.id == second.profile.id == "u1"


def test_racing_processes_insert_exactly_once(store, clock):
    # Two reconcilers stand in for two processes sharing one database
    left = _reconciler(store, clock)
    right = _reconciler(store, clock)

    async def main():
        return await asyncio.gather(
            left.ensure("u1", "a@example.com"),
            right.ensure("u1", "a@example.com"),
        )

    first, second = asyncio.run(main())

    assert store.inserts == 1
    assert first.status == second.status == ProfileStatus.OK
    assert first.profile.id == second.profile.id == "u1"


def test_transient_insert_failure_is_retried(store, clock):
    store.fail_inserts = 1

    result = asyncio.run(_reconciler(store, clock).ensure("u1", "a@example.com"))

    assert result.status == ProfileStatus.OK
    assert store.inserts == 1


def test_exhausted_retries_degrade(store, clock):
    store.fail_inserts = 5

    result = asyncio.run(_reconciler(store, clock, retry_attempts=2).ensure("u1", "a@example.com"))

    assert result.is_degraded
    assert result.reason
    assert result.profile.id == "u1"
    assert result.profile.is_online is True
    assert result.profile.latitude is None
    assert store.rows == {}
    assert store.fail_inserts == 3


def test_failed_lookup_still_provisions(store, clock):
    store.fail_fetches = 1

    result = asyncio.run(_reconciler(store, clock).ensure("u1", "a@example.com"))

    assert result.status == ProfileStatus.OK
    assert store.inserts == 1


def test_failed_lookup_of_existing_row_recovers_from_conflict(store, clock):
    store.add(make_profile("u1", username="andi"))
    store.fail_fetches = 1

    result = asyncio.run(_reconciler(store, clock).ensure("u1", "other@example.com"))

    assert result.status == ProfileStatus.OK
    assert result.profile.username == "andi"
    assert store.inserts == 0
