"""Tests for the reconciliation pass that drains the failure cache."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradetree.config import ResilienceSettings
from tradetree.exceptions import StoreUnavailableError
from tradetree.locks import KeyedLocks
from tradetree.resilience.cache import MutationCache
from tradetree.resilience.reconciler import Reconciler
from tradetree.tree import session_machine as sm


@pytest.fixture
def settings() -> ResilienceSettings:
    return ResilienceSettings(max_retry_count=1)


@pytest.fixture
def store() -> MagicMock:
    mock = MagicMock()
    mock.save_session = AsyncMock()
    return mock


@pytest.fixture
def cache(settings: ResilienceSettings) -> MutationCache:
    return MutationCache(settings)


@pytest.fixture
def reconciler(cache, store, settings) -> Reconciler:
    return Reconciler(cache, store, settings, KeyedLocks())


@pytest.mark.asyncio()
async def test_synced_entries_leave_the_cache(reconciler, cache, store) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session)

    report = await reconciler.sync()

    assert report.synced == [session.session_id]
    assert len(cache) == 0
    saved = store.save_session.await_args.args[0]
    assert saved.session_id == session.session_id


@pytest.mark.asyncio()
async def test_failed_sync_counts_retries(reconciler, cache, store) -> None:
    session = sm.new_session("BTCUSDT", Decimal("1000"))
    cache.put(session)
    store.save_session.side_effect = StoreUnavailableError("locked")

    await reconciler.sync()
    report = await reconciler.sync()

    assert report.failed == [session.session_id]
    entry = cache.entry(session.session_id)
    assert entry.retry_count == 2
    assert entry.requires_manual_intervention


@pytest.mark.asyncio()
async def test_start_stop(reconciler) -> None:
    await reconciler.start()
    await reconciler.stop()


@pytest.mark.asyncio()
async def test_keyed_locks_are_released() -> None:
    locks = KeyedLocks()
    async with locks.hold("sess_1"):
        assert locks.locked("sess_1")
    assert not locks.locked("sess_1")
