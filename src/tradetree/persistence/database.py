"""SQLite schema and connection lifecycle for the session store.

One aiosqlite connection per process, WAL journal. The schema is created
idempotently on connect; later versions are applied as additive column
migrations recorded in ``schema_version``.
"""

import os
from typing import Self

import aiosqlite

from tradetree.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 2

# version -> (table, column, declaration) added in that version
_COLUMN_MIGRATIONS: dict[int, list[tuple[str, str, str]]] = {
    2: [("overnight_registrations", "rollback_pending", "INTEGER NOT NULL DEFAULT 0")],
}

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    current_node_id TEXT NOT NULL,
    initial_capital TEXT NOT NULL,
    running_total TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    requires_manual_confirmation INTEGER NOT NULL DEFAULT 0,
    blocked_reason TEXT NOT NULL DEFAULT '',
    notes TEXT NOT NULL DEFAULT '[]',
    open_trade TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_steps (
    session_id TEXT NOT NULL,
    step_number INTEGER NOT NULL,
    from_node_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    action TEXT NOT NULL,
    stake_applied TEXT NOT NULL,
    signed_result TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    trade_id TEXT,
    status TEXT,
    PRIMARY KEY (session_id, step_number),
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS trade_signals (
    external_id TEXT PRIMARY KEY,
    session_id TEXT,
    action TEXT NOT NULL,
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    entry TEXT NOT NULL,
    target TEXT NOT NULL,
    stop TEXT NOT NULL,
    risk_reward TEXT NOT NULL,
    risk_percent TEXT NOT NULL,
    signal_time TEXT NOT NULL,
    received_at TEXT NOT NULL,
    warnings TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS trade_costs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    trade_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    profile TEXT NOT NULL,
    stake TEXT NOT NULL,
    nominal_profit TEXT NOT NULL,
    net_profit TEXT NOT NULL,
    total_cost TEXT NOT NULL,
    breakdown TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS overnight_registrations (
    trade_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL,
    entry TEXT NOT NULL,
    target TEXT NOT NULL,
    stop TEXT NOT NULL,
    stake_amount TEXT NOT NULL,
    node_id TEXT NOT NULL,
    previous_node_id TEXT NOT NULL,
    overnight_close_enabled INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    registered_at TEXT NOT NULL,
    closed_at TEXT,
    close_reason TEXT,
    close_price TEXT,
    realized_pnl TEXT,
    rollback_pending INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS alerts (
    alert_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    acknowledged INTEGER NOT NULL DEFAULT 0,
    acknowledged_by TEXT,
    acknowledged_at TEXT
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_sessions_symbol_completed
    ON sessions(symbol, completed);

CREATE INDEX IF NOT EXISTS idx_overnight_status
    ON overnight_registrations(status);

CREATE INDEX IF NOT EXISTS idx_trade_costs_session
    ON trade_costs(session_id);
"""


class Database:
    """Owns the aiosqlite connection the store writes through.

    Usable as an async context manager, which connects on entry and
    closes on exit.
    """

    def __init__(self, db_path: str = "data/tradetree.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError(f"Database {self._db_path} is not connected")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the file (creating its directory), set pragmas, apply the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        for pragma in ("journal_mode=WAL", "synchronous=NORMAL", "foreign_keys=ON"):
            await conn.execute(f"PRAGMA {pragma}")
        self._connection = conn

        await conn.executescript(_CREATE_TABLES_SQL)
        await conn.executescript(_CREATE_INDEXES_SQL)
        version = await self._migrate(conn)
        await conn.commit()
        logger.info("database_connected", db_path=self._db_path, schema_version=version)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("database_closed", db_path=self._db_path)

    async def _migrate(self, conn: aiosqlite.Connection) -> int:
        cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        current = row[0] if row is not None and row[0] is not None else None
        if current is None:
            # Fresh file: the CREATE statements already carry every column
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            return SCHEMA_VERSION

        for version in range(current + 1, SCHEMA_VERSION + 1):
            for table, column, declaration in _COLUMN_MIGRATIONS.get(version, []):
                cursor = await conn.execute(f"PRAGMA table_info({table})")
                existing = {r["name"] for r in await cursor.fetchall()}
                if column not in existing:
                    await conn.execute(
                        f"ALTER TABLE {table} ADD COLUMN {column} {declaration}"
                    )
            await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            logger.info("schema_migrated", version=version)
        return max(current, SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
