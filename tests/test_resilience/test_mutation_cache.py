"""Tests for the failure cache: TTL, retry counting, mirror file."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradetree.config import ResilienceSettings
from tradetree.resilience.cache import MutationCache
from tradetree.tree import session_machine as sm

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self):
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def cache(clock: Clock) -> MutationCache:
    return MutationCache(ResilienceSettings(max_retry_count=2, cache_ttl_seconds=60), clock=clock)


def test_put_and_get(cache: MutationCache) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session, "disk I/O error")

    cached = cache.get(session.session_id)
    assert cached.to_dict() == session.to_dict()
    assert session.session_id in cache
    assert cache.entry(session.session_id).last_error == "disk I/O error"


def test_newer_snapshot_replaces_older(cache: MutationCache) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session)
    sm.rename(session, "renamed")
    cache.put(session)

    assert len(cache) == 1
    assert cache.get(session.session_id).name == "renamed"
    assert cache.entry(session.session_id).retry_count == 1


def test_manual_intervention_after_max_retries(cache: MutationCache) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session)
    for _ in range(3):
        cache.record_failure(session.session_id, "locked")

    entry = cache.entry(session.session_id)
    assert entry.retry_count == 3
    assert entry.requires_manual_intervention
    assert cache.status()["requires_manual_intervention"] == 1


def test_expired_entries_are_invisible_and_dropped(cache: MutationCache, clock: Clock) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session)

    clock.now = NOW + timedelta(seconds=61)

    assert cache.get(session.session_id) is None
    assert cache.find_active("BTCUSDT") is None
    assert cache.expire() == [session.session_id]
    assert len(cache) == 0


def test_find_active_ignores_completed(cache: MutationCache) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    session.completed = True
    cache.put(session)

    assert cache.find_active("BTCUSDT") is None


def test_mirror_file_survives_restart(tmp_path, clock: Clock) -> None:
    settings = ResilienceSettings(cache_file=str(tmp_path / "cache" / "pending.json"))
    session = sm.new_session("BTCUSDT", Decimal("1000"))

    first = MutationCache(settings, clock=clock)
    first.put(session, "down")

    second = MutationCache(settings, clock=clock)
    assert second.load() == 1
    assert second.get(session.session_id).session_id == session.session_id

    second.remove(session.session_id)
    third = MutationCache(settings, clock=clock)
    assert third.load() == 0
