"""Typed SQLite read/write abstraction for sessions, signals, costs and alerts.

Provides SessionStore with typed methods. All SQL is isolated behind this
interface, and every aiosqlite or OS error is re-raised as
StoreUnavailableError so callers can retry and then fall back to the
failure cache.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import functools
import json
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, ParamSpec, TypeVar

import aiosqlite

from tradetree.exceptions import StoreUnavailableError
from tradetree.logging import get_logger
from tradetree.models import (
    Action,
    Alert,
    AlertSeverity,
    AlertType,
    OpenTrade,
    OvernightRegistration,
    PathStep,
    RegistrationStatus,
    Session,
    StepAction,
    TradeSignal,
    utcnow,
)
from tradetree.persistence.database import Database

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _store_errors(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Translate driver and I/O errors into StoreUnavailableError."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await func(*args, **kwargs)
        except (aiosqlite.Error, sqlite3.Error, OSError, RuntimeError) as exc:
            logger.warning("store_operation_failed", operation=func.__name__, error=str(exc))
            raise StoreUnavailableError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _opt_decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


class SessionStore:
    """Async SQLite store for the engine's durable state.

    Wraps Database with typed read/write methods. Multi-statement writes
    are serialized through an asyncio.Lock and committed as one
    transaction.

    Usage:
        async with Database("data/tradetree.db") as database:
            store = SessionStore(database)
            await store.save_session(session)
    """

    def __init__(self, database: Database) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Session write methods
    # ──────────────────────────────────────────────

    @_store_errors
    async def save_session(self, session: Session) -> None:
        """Upsert a full session snapshot: the row plus every path step.

        Create-if-absent, else update fields. Steps are keyed by step
        number, so replaying the same snapshot is idempotent.
        """
        db = self._database.db
        async with self._write_lock:
            try:
                await db.execute(
                    "INSERT INTO sessions "
                    "(session_id, symbol, name, current_node_id, initial_capital, "
                    "running_total, completed, requires_manual_confirmation, "
                    "blocked_reason, notes, open_trade, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(session_id) DO UPDATE SET "
                    "symbol = excluded.symbol, "
                    "name = excluded.name, "
                    "current_node_id = excluded.current_node_id, "
                    "initial_capital = excluded.initial_capital, "
                    "running_total = excluded.running_total, "
                    "completed = excluded.completed, "
                    "requires_manual_confirmation = excluded.requires_manual_confirmation, "
                    "blocked_reason = excluded.blocked_reason, "
                    "notes = excluded.notes, "
                    "open_trade = excluded.open_trade, "
                    "updated_at = excluded.updated_at",
                    self._session_row(session),
                )
                await db.executemany(
                    "INSERT OR REPLACE INTO session_steps "
                    "(session_id, step_number, from_node_id, node_id, action, "
                    "stake_applied, signed_result, timestamp, note, trade_id, status) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [self._step_row(session.session_id, s) for s in session.path_history],
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        logger.debug(
            "session_saved",
            session_id=session.session_id,
            node=session.current_node_id,
            steps=len(session.path_history),
        )

    @_store_errors
    async def append_step(self, session_id: str, step: PathStep) -> None:
        """Append one path step without touching the session row."""
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT INTO session_steps "
                "(session_id, step_number, from_node_id, node_id, action, "
                "stake_applied, signed_result, timestamp, note, trade_id, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._step_row(session_id, step),
            )
            await self._database.db.commit()

    @_store_errors
    async def update_step_stake(
        self, session_id: str, step_number: int, stake: Decimal, note: str
    ) -> bool:
        """Overwrite the stake of a recorded step. Returns False when absent."""
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "UPDATE session_steps SET stake_applied = ?, note = ? "
                "WHERE session_id = ? AND step_number = ?",
                (str(stake), note, session_id, step_number),
            )
            await self._database.db.commit()
        return cursor.rowcount > 0

    @_store_errors
    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its steps. Returns False when it did not exist."""
        db = self._database.db
        async with self._write_lock:
            try:
                await db.execute(
                    "DELETE FROM session_steps WHERE session_id = ?", (session_id,)
                )
                cursor = await db.execute(
                    "DELETE FROM sessions WHERE session_id = ?", (session_id,)
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("session_deleted", session_id=session_id)
        return deleted

    # ──────────────────────────────────────────────
    # Session read methods
    # ──────────────────────────────────────────────

    @_store_errors
    async def get_session(self, session_id: str) -> Session | None:
        """Load a session with its full path history."""
        cursor = await self._database.db.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self._hydrate(row)

    @_store_errors
    async def find_active_session(self, symbol: str) -> Session | None:
        """Return the most recent non-completed session for a symbol."""
        cursor = await self._database.db.execute(
            "SELECT * FROM sessions WHERE symbol = ? AND completed = 0 "
            "ORDER BY created_at DESC LIMIT 1",
            (symbol,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self._hydrate(row)

    @_store_errors
    async def list_sessions(self, include_completed: bool = True) -> list[Session]:
        """Return all sessions, newest first."""
        sql = "SELECT * FROM sessions"
        if not include_completed:
            sql += " WHERE completed = 0"
        sql += " ORDER BY created_at DESC"
        cursor = await self._database.db.execute(sql)
        rows = await cursor.fetchall()
        return [await self._hydrate(row) for row in rows]

    async def _hydrate(self, row: aiosqlite.Row) -> Session:
        cursor = await self._database.db.execute(
            "SELECT * FROM session_steps WHERE session_id = ? ORDER BY step_number",
            (row["session_id"],),
        )
        steps = [
            PathStep(
                step_number=s["step_number"],
                from_node_id=s["from_node_id"],
                node_id=s["node_id"],
                action=StepAction(s["action"]),
                stake_applied=Decimal(s["stake_applied"]),
                signed_result=Decimal(s["signed_result"]),
                timestamp=datetime.fromisoformat(s["timestamp"]),
                note=s["note"],
                trade_id=s["trade_id"],
                status=s["status"],
            )
            for s in await cursor.fetchall()
        ]
        open_trade = json.loads(row["open_trade"]) if row["open_trade"] else None
        return Session(
            session_id=row["session_id"],
            symbol=row["symbol"],
            name=row["name"],
            current_node_id=row["current_node_id"],
            initial_capital=Decimal(row["initial_capital"]),
            running_total=Decimal(row["running_total"]),
            path_history=steps,
            completed=bool(row["completed"]),
            requires_manual_confirmation=bool(row["requires_manual_confirmation"]),
            blocked_reason=row["blocked_reason"],
            notes=json.loads(row["notes"]),
            open_trade=OpenTrade.from_dict(open_trade) if open_trade else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _session_row(session: Session) -> tuple:
        return (
            session.session_id,
            session.symbol,
            session.name,
            session.current_node_id,
            str(session.initial_capital),
            str(session.running_total),
            int(session.completed),
            int(session.requires_manual_confirmation),
            session.blocked_reason,
            json.dumps(session.notes),
            json.dumps(session.open_trade.to_dict()) if session.open_trade else None,
            session.created_at.isoformat(),
            session.updated_at.isoformat(),
        )

    @staticmethod
    def _step_row(session_id: str, step: PathStep) -> tuple:
        return (
            session_id,
            step.step_number,
            step.from_node_id,
            step.node_id,
            step.action.value,
            str(step.stake_applied),
            str(step.signed_result),
            step.timestamp.isoformat(),
            step.note,
            step.trade_id,
            step.status,
        )

    # ──────────────────────────────────────────────
    # Signals and costs
    # ──────────────────────────────────────────────

    @_store_errors
    async def signal_exists(self, external_id: str) -> bool:
        cursor = await self._database.db.execute(
            "SELECT 1 FROM trade_signals WHERE external_id = ?", (external_id,)
        )
        return await cursor.fetchone() is not None

    @_store_errors
    async def save_signal(
        self,
        signal: TradeSignal,
        session_id: str | None,
        warnings: list[str],
    ) -> bool:
        """Record an accepted signal. Returns False if the id was already stored."""
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "INSERT OR IGNORE INTO trade_signals "
                "(external_id, session_id, action, symbol, timeframe, entry, target, "
                "stop, risk_reward, risk_percent, signal_time, received_at, warnings) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    signal.external_id,
                    session_id,
                    signal.action.value,
                    signal.symbol,
                    signal.timeframe,
                    str(signal.entry),
                    str(signal.target),
                    str(signal.stop),
                    str(signal.risk_reward),
                    str(signal.risk_percent),
                    signal.signal_time.isoformat(),
                    signal.received_at.isoformat(),
                    json.dumps(warnings),
                ),
            )
            await self._database.db.commit()
        return cursor.rowcount > 0

    @_store_errors
    async def record_trade_cost(
        self,
        session_id: str,
        trade_id: str,
        node_id: str,
        profile: str,
        stake: Decimal,
        nominal_profit: Decimal,
        net_profit: Decimal,
        breakdown: dict[str, Decimal],
    ) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT INTO trade_costs "
                "(session_id, trade_id, node_id, profile, stake, nominal_profit, "
                "net_profit, total_cost, breakdown, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session_id,
                    trade_id,
                    node_id,
                    profile,
                    str(stake),
                    str(nominal_profit),
                    str(net_profit),
                    str(breakdown.get("total", Decimal("0"))),
                    json.dumps({k: str(v) for k, v in breakdown.items()}),
                    utcnow().isoformat(),
                ),
            )
            await self._database.db.commit()

    @_store_errors
    async def get_trade_costs(self, session_id: str) -> list[dict[str, Any]]:
        cursor = await self._database.db.execute(
            "SELECT * FROM trade_costs WHERE session_id = ? ORDER BY id",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "trade_id": r["trade_id"],
                "node_id": r["node_id"],
                "profile": r["profile"],
                "stake": Decimal(r["stake"]),
                "nominal_profit": Decimal(r["nominal_profit"]),
                "net_profit": Decimal(r["net_profit"]),
                "total_cost": Decimal(r["total_cost"]),
                "breakdown": {k: Decimal(v) for k, v in json.loads(r["breakdown"]).items()},
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ──────────────────────────────────────────────
    # Overnight registrations
    # ──────────────────────────────────────────────

    @_store_errors
    async def save_registration(self, reg: OvernightRegistration) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT OR REPLACE INTO overnight_registrations "
                "(trade_id, session_id, symbol, action, entry, target, stop, "
                "stake_amount, node_id, previous_node_id, overnight_close_enabled, "
                "status, registered_at, closed_at, close_reason, close_price, realized_pnl, "
                "rollback_pending) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    reg.trade_id,
                    reg.session_id,
                    reg.symbol,
                    reg.action.value,
                    str(reg.entry),
                    str(reg.target),
                    str(reg.stop),
                    str(reg.stake_amount),
                    reg.node_id,
                    reg.previous_node_id,
                    int(reg.overnight_close_enabled),
                    reg.status.value,
                    reg.registered_at.isoformat(),
                    reg.closed_at.isoformat() if reg.closed_at else None,
                    reg.close_reason,
                    str(reg.close_price) if reg.close_price is not None else None,
                    str(reg.realized_pnl) if reg.realized_pnl is not None else None,
                    int(reg.rollback_pending),
                ),
            )
            await self._database.db.commit()

    @_store_errors
    async def list_registrations(
        self, status: RegistrationStatus | None = None
    ) -> list[OvernightRegistration]:
        if status is None:
            cursor = await self._database.db.execute(
                "SELECT * FROM overnight_registrations ORDER BY registered_at"
            )
        else:
            cursor = await self._database.db.execute(
                "SELECT * FROM overnight_registrations WHERE status = ? "
                "ORDER BY registered_at",
                (status.value,),
            )
        rows = await cursor.fetchall()
        return [
            OvernightRegistration(
                trade_id=r["trade_id"],
                session_id=r["session_id"],
                symbol=r["symbol"],
                action=Action(r["action"]),
                entry=Decimal(r["entry"]),
                target=Decimal(r["target"]),
                stop=Decimal(r["stop"]),
                stake_amount=Decimal(r["stake_amount"]),
                node_id=r["node_id"],
                previous_node_id=r["previous_node_id"],
                overnight_close_enabled=bool(r["overnight_close_enabled"]),
                status=RegistrationStatus(r["status"]),
                registered_at=datetime.fromisoformat(r["registered_at"]),
                closed_at=_ts(r["closed_at"]),
                close_reason=r["close_reason"],
                close_price=_opt_decimal(r["close_price"]),
                realized_pnl=_opt_decimal(r["realized_pnl"]),
                rollback_pending=bool(r["rollback_pending"]),
            )
            for r in rows
        ]

    # ──────────────────────────────────────────────
    # Alerts
    # ──────────────────────────────────────────────

    @_store_errors
    async def save_alert(self, alert: Alert) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT OR REPLACE INTO alerts "
                "(alert_id, type, severity, message, data, created_at, acknowledged, "
                "acknowledged_by, acknowledged_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    alert.alert_id,
                    alert.type.value,
                    alert.severity.value,
                    alert.message,
                    json.dumps(alert.data, default=str),
                    alert.created_at.isoformat(),
                    int(alert.acknowledged),
                    alert.acknowledged_by,
                    alert.acknowledged_at.isoformat() if alert.acknowledged_at else None,
                ),
            )
            await self._database.db.commit()

    @_store_errors
    async def list_alerts(self, limit: int = 50) -> list[Alert]:
        cursor = await self._database.db.execute(
            "SELECT * FROM alerts ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        return [
            Alert(
                alert_id=r["alert_id"],
                type=AlertType(r["type"]),
                severity=AlertSeverity(r["severity"]),
                message=r["message"],
                data=json.loads(r["data"]),
                created_at=datetime.fromisoformat(r["created_at"]),
                acknowledged=bool(r["acknowledged"]),
                acknowledged_by=r["acknowledged_by"],
                acknowledged_at=_ts(r["acknowledged_at"]),
            )
            for r in rows
        ]
