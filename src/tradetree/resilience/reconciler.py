"""Background reconciliation of the failure cache against the durable store.

Each pass drops cached snapshots older than the TTL and upserts the rest
(create-if-absent, else update). Successes leave the cache, failures stay
for the next pass. Runs as a scheduled task every ``reconcile_interval``
seconds and can be triggered on demand from the HTTP API.
"""

import asyncio
from dataclasses import dataclass, field

from tradetree.config import ResilienceSettings
from tradetree.exceptions import StoreUnavailableError
from tradetree.locks import KeyedLocks
from tradetree.logging import get_logger
from tradetree.models import Session
from tradetree.persistence.store import SessionStore
from tradetree.resilience.cache import MutationCache

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {"synced": self.synced, "failed": self.failed, "expired": self.expired}


class Reconciler:
    """Drains the failure cache into the durable store.

    Args:
        cache: Failure cache to drain.
        store: Durable store.
        settings: Reconciliation interval.
        session_locks: Per-session locks shared with the workflow, so a
            stale snapshot never overwrites a newer write.
    """

    def __init__(
        self,
        cache: MutationCache,
        store: SessionStore,
        settings: ResilienceSettings,
        session_locks: KeyedLocks,
    ) -> None:
        self._cache = cache
        self._store = store
        self._settings = settings
        self._session_locks = session_locks
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._pass_lock = asyncio.Lock()

    async def sync(self) -> ReconcileReport:
        """Run one reconciliation pass."""
        async with self._pass_lock:
            report = ReconcileReport(expired=self._cache.expire())
            for entry in self._cache.entries():
                async with self._session_locks.hold(entry.session_id):
                    # The workflow may have flushed or replaced it while we waited
                    current = self._cache.entry(entry.session_id)
                    if current is None:
                        continue
                    try:
                        await self._store.save_session(Session.from_dict(current.payload))
                    except StoreUnavailableError as exc:
                        self._cache.record_failure(current.session_id, str(exc))
                        report.failed.append(current.session_id)
                        continue
                    self._cache.remove(current.session_id)
                    report.synced.append(current.session_id)

        if report.synced or report.failed or report.expired:
            logger.info(
                "failure_cache_reconciled",
                synced=len(report.synced),
                failed=len(report.failed),
                expired=len(report.expired),
            )
        return report

    async def start(self) -> None:
        """Begin periodic reconciliation in the background."""
        if self._running:
            logger.warning("reconciler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("reconciler_started", interval=self._settings.reconcile_interval)

    async def stop(self) -> None:
        """Stop the reconciliation loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reconciler_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sync()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("reconciler_pass_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.reconcile_interval)
