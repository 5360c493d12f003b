"""Durable-store failure cache.

Session snapshots that could not be persisted are buffered here, keyed by
session id. Repeated failures for the same session bump its retry count;
past ``max_retry_count`` the entry is flagged for manual intervention but
kept. Entries leave the cache only through successful reconciliation or
TTL expiry.

The cache is optionally mirrored to a JSON file so buffered mutations
survive a restart.
"""

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tradetree.config import ResilienceSettings
from tradetree.logging import get_logger
from tradetree.models import Session, utcnow

logger = get_logger(__name__)


@dataclass
class CachedMutation:
    """A session snapshot waiting to be written to the durable store."""

    session_id: str
    payload: dict[str, Any]
    created_at: datetime
    retry_count: int = 0
    requires_manual_intervention: bool = False
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
            "requires_manual_intervention": self.requires_manual_intervention,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CachedMutation":
        return cls(
            session_id=data["session_id"],
            payload=data["payload"],
            created_at=datetime.fromisoformat(data["created_at"]),
            retry_count=int(data.get("retry_count", 0)),
            requires_manual_intervention=bool(data.get("requires_manual_intervention")),
            last_error=data.get("last_error"),
        )


class MutationCache:
    """In-memory failure cache with TTL and manual-intervention flagging.

    Args:
        settings: Max retry count, TTL and optional mirror file.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        settings: ResilienceSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._entries: dict[str, CachedMutation] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def put(self, session: Session, error: str | None = None) -> CachedMutation:
        """Buffer a snapshot, replacing any older snapshot for the same session."""
        existing = self._entries.get(session.session_id)
        if existing is None:
            entry = CachedMutation(
                session_id=session.session_id,
                payload=session.to_dict(),
                created_at=self._clock(),
                last_error=error,
            )
            self._entries[session.session_id] = entry
        else:
            entry = existing
            entry.payload = session.to_dict()
            entry.last_error = error
            self.record_failure(session.session_id, error)

        logger.warning(
            "session_cached_after_store_failure",
            session_id=session.session_id,
            retry_count=entry.retry_count,
            requires_manual_intervention=entry.requires_manual_intervention,
        )
        self._mirror()
        return entry

    def record_failure(self, session_id: str, error: str | None = None) -> None:
        """Count another failed write for a cached session."""
        entry = self._entries.get(session_id)
        if entry is None:
            return
        entry.retry_count += 1
        entry.last_error = error
        if entry.retry_count > self._settings.max_retry_count and not entry.requires_manual_intervention:
            entry.requires_manual_intervention = True
            logger.error(
                "cached_session_needs_manual_intervention",
                session_id=session_id,
                retry_count=entry.retry_count,
                error=error,
            )
        self._mirror()

    def is_expired(self, entry: CachedMutation, now: datetime | None = None) -> bool:
        age = ((now or self._clock()) - entry.created_at).total_seconds()
        return age > self._settings.cache_ttl_seconds

    def get(self, session_id: str) -> Session | None:
        """Return the cached snapshot of a session, if any and not expired."""
        entry = self._entries.get(session_id)
        if entry is None or self.is_expired(entry):
            return None
        return Session.from_dict(entry.payload)

    def find_active(self, symbol: str) -> Session | None:
        """Return a cached, non-completed session for the symbol."""
        for entry in self._entries.values():
            payload = entry.payload
            if payload["symbol"] == symbol and not payload["completed"] and not self.is_expired(entry):
                return Session.from_dict(payload)
        return None

    def entry(self, session_id: str) -> CachedMutation | None:
        return self._entries.get(session_id)

    def remove(self, session_id: str) -> None:
        if self._entries.pop(session_id, None) is not None:
            self._mirror()

    def entries(self) -> list[CachedMutation]:
        return list(self._entries.values())

    def expire(self, now: datetime | None = None) -> list[str]:
        """Drop entries older than the TTL. Returns the dropped session ids."""
        now = now or self._clock()
        expired = [sid for sid, e in self._entries.items() if self.is_expired(e, now)]
        for session_id in expired:
            del self._entries[session_id]
            logger.warning("cached_session_expired", session_id=session_id)
        if expired:
            self._mirror()
        return expired

    def status(self) -> dict[str, Any]:
        """Summary for the system API."""
        now = self._clock()
        return {
            "size": len(self._entries),
            "requires_manual_intervention": sum(
                1 for e in self._entries.values() if e.requires_manual_intervention
            ),
            "entries": [
                {
                    "session_id": e.session_id,
                    "retry_count": e.retry_count,
                    "requires_manual_intervention": e.requires_manual_intervention,
                    "age_seconds": round((now - e.created_at).total_seconds(), 1),
                    "expired": self.is_expired(e, now),
                    "last_error": e.last_error,
                }
                for e in self._entries.values()
            ],
        }

    def load(self) -> int:
        """Load the mirror file if configured. Returns the number of entries read."""
        path = self._settings.cache_file
        if not path or not os.path.exists(path):
            return 0
        try:
            with open(path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.error("failure_cache_load_failed", path=path, error=str(exc))
            return 0
        for item in raw:
            entry = CachedMutation.from_dict(item)
            self._entries[entry.session_id] = entry
        logger.info("failure_cache_loaded", path=path, entries=len(raw))
        return len(raw)

    def _mirror(self) -> None:
        path = self._settings.cache_file
        if not path:
            return
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump([e.to_dict() for e in self._entries.values()], fh)
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("failure_cache_mirror_failed", path=path, error=str(exc))
