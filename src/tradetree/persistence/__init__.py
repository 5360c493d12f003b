"""Persistence layer -- aiosqlite database manager and typed session store."""

from tradetree.persistence.database import Database
from tradetree.persistence.store import SessionStore

__all__ = ["Database", "SessionStore"]
