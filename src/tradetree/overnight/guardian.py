"""Overnight guardian -- time-boxed exposure with forced closure.

Every executed trade is registered here. A daily cutoff instant (03:00 in
a fixed reference timezone by default) bounds how long a trade may stay
open:

- In the grace window before the cutoff, overnight-enabled trades are
  checked for early exit: price within the proximity threshold of target
  or stop, open longer than ``max_hours_open``, or the cutoff closer than
  ``minutes_to_cutoff``.
- Past the cutoff, every remaining active overnight-enabled trade that
  was registered before it is force-closed at market, whatever its P/L.

A forced closure always rolls the owning session back to the node it sat
on before the trade (``previous_node_id``): the trade never definitively
resolved, so no graph transition may stand. Registrations only ever move
``active -> closed`` or ``active -> rolled_back``.

When the position is closed at the venue but the session rollback cannot
be applied (store outage), the registration stays active with
``rollback_pending`` set and the realized P/L kept; later scans retry only
the rollback. Finished registrations leave memory once persisted; a short
history of them is kept for the API.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from tradetree.config import OvernightSettings
from tradetree.exceptions import StoreUnavailableError, TradeTreeError
from tradetree.logging import get_logger
from tradetree.models import (
    Action,
    OpenTrade,
    OvernightRegistration,
    RegistrationStatus,
    utcnow,
)

if TYPE_CHECKING:
    from tradetree.alerting.alerts import AlertService
    from tradetree.execution.retry import RetryPolicy
    from tradetree.execution.venue import Venue
    from tradetree.persistence.store import SessionStore

logger = get_logger(__name__)

# (registration, realized P/L, reason) -> True if the session was rolled back
RollbackHandler = Callable[[OvernightRegistration, Decimal, str], Awaitable[bool]]

_FINISHED_HISTORY = 200


@dataclass
class ScanReport:
    """What one guardian scan did."""

    rolled_back: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    checked: int = 0


def realized_pnl(
    action: Action, entry: Decimal, exit_price: Decimal, stake: Decimal
) -> Decimal:
    """P/L of closing a position of notional ``stake`` at ``exit_price``."""
    if entry <= 0:
        return Decimal("0")
    move = (exit_price - entry) / entry
    if action == Action.SELL:
        move = -move
    return stake * move


class OvernightGuardian:
    """Schedules and performs forced overnight closures.

    Args:
        settings: Cutoff, timezone, grace window and early-exit thresholds.
        venue: Venue used to close positions and read prices.
        store: Durable store for registrations.
        retry_policy: Retry policy for venue closes.
        alert_service: Optional alerting for failed closures.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        settings: OvernightSettings,
        venue: Venue,
        store: SessionStore,
        retry_policy: RetryPolicy,
        alert_service: AlertService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._venue = venue
        self._store = store
        self._retry = retry_policy
        self._alerts = alert_service
        self._clock = clock
        self._tz = ZoneInfo(settings.timezone)
        hour, minute = (int(part) for part in settings.cutoff_time.split(":"))
        self._cutoff = dt_time(hour, minute)
        self._registrations: dict[str, OvernightRegistration] = {}
        self._finished: deque[OvernightRegistration] = deque(maxlen=_FINISHED_HISTORY)
        self._rollback_handler: RollbackHandler | None = None
        self._scan_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def set_rollback_handler(self, handler: RollbackHandler) -> None:
        """Wire the session rollback (set after the workflow is built)."""
        self._rollback_handler = handler

    async def load(self) -> int:
        """Restore active registrations from the store after a restart."""
        try:
            active = await self._store.list_registrations(RegistrationStatus.ACTIVE)
        except StoreUnavailableError:
            logger.warning("overnight_registrations_load_failed", exc_info=True)
            return 0
        for reg in active:
            self._registrations[reg.trade_id] = reg
        logger.info("overnight_registrations_loaded", count=len(active))
        return len(active)

    # ──────────────────────────────────────────────
    # Registration lifecycle
    # ──────────────────────────────────────────────

    async def register(
        self,
        trade: OpenTrade,
        session_id: str,
        previous_node_id: str,
        overnight_close_enabled: bool | None = None,
    ) -> OvernightRegistration:
        """Start watching an executed trade."""
        enabled = (
            self._settings.close_enabled_default
            if overnight_close_enabled is None
            else overnight_close_enabled
        )
        reg = OvernightRegistration(
            trade_id=trade.trade_id,
            session_id=session_id,
            symbol=trade.symbol,
            action=trade.action,
            entry=trade.entry,
            target=trade.target,
            stop=trade.stop,
            stake_amount=trade.stake,
            node_id=trade.node_id,
            previous_node_id=previous_node_id,
            overnight_close_enabled=enabled,
            registered_at=self._clock(),
        )
        self._registrations[reg.trade_id] = reg
        await self._persist(reg)
        logger.info(
            "overnight_trade_registered",
            trade_id=reg.trade_id,
            session_id=session_id,
            overnight_close_enabled=enabled,
        )
        return reg

    async def close(
        self,
        trade_id: str,
        reason: str,
        close_price: Decimal | None = None,
        pnl: Decimal | None = None,
    ) -> bool:
        """Mark a registration closed because its trade resolved normally."""
        reg = self._registrations.get(trade_id)
        if reg is None or reg.status != RegistrationStatus.ACTIVE:
            return False
        self._finish(reg, RegistrationStatus.CLOSED, reason, close_price, pnl)
        await self._retire(reg)
        logger.info("overnight_trade_closed", trade_id=trade_id, reason=reason)
        return True

    async def manual_close(self, trade_id: str, reason: str = "manual_close") -> bool:
        """Close a trade at market on operator request.

        The session is not rolled back; its outcome arrives through the
        regular outcome callback.
        """
        reg = self._registrations.get(trade_id)
        if reg is None or reg.status != RegistrationStatus.ACTIVE or reg.rollback_pending:
            return False
        fill_price, pnl = await self._close_at_market(reg)
        return await self.close(trade_id, reason, fill_price, pnl)

    async def update_settings(
        self, trade_id: str, overnight_close_enabled: bool
    ) -> OvernightRegistration | None:
        """Toggle forced closure for one active trade."""
        reg = self._registrations.get(trade_id)
        if reg is None or reg.status != RegistrationStatus.ACTIVE:
            return None
        reg.overnight_close_enabled = overnight_close_enabled
        await self._persist(reg)
        logger.info(
            "overnight_settings_updated",
            trade_id=trade_id,
            overnight_close_enabled=overnight_close_enabled,
        )
        return reg

    def now(self) -> datetime:
        return self._clock()

    def get(self, trade_id: str) -> OvernightRegistration | None:
        reg = self._registrations.get(trade_id)
        if reg is None:
            reg = next((r for r in reversed(self._finished) if r.trade_id == trade_id), None)
        return reg

    def active_registrations(self) -> list[OvernightRegistration]:
        return [
            r for r in self._registrations.values() if r.status == RegistrationStatus.ACTIVE
        ]

    def all_registrations(self) -> list[OvernightRegistration]:
        """Live registrations plus the most recently finished ones."""
        return [*self._registrations.values(), *self._finished]

    # ──────────────────────────────────────────────
    # Cutoff schedule
    # ──────────────────────────────────────────────

    def _cutoff_on(self, day: date) -> datetime:
        return datetime.combine(day, self._cutoff, tzinfo=self._tz)

    def last_cutoff(self, now: datetime) -> datetime:
        """Most recent cutoff instant at or before ``now``."""
        local = now.astimezone(self._tz)
        cutoff = self._cutoff_on(local.date())
        if cutoff > local:
            cutoff = self._cutoff_on(local.date() - timedelta(days=1))
        return cutoff

    def next_cutoff(self, now: datetime) -> datetime:
        """First cutoff instant strictly after ``now``."""
        local = now.astimezone(self._tz)
        cutoff = self._cutoff_on(local.date())
        if cutoff <= local:
            cutoff = self._cutoff_on(local.date() + timedelta(days=1))
        return cutoff

    def in_grace_window(self, now: datetime) -> bool:
        remaining = self.next_cutoff(now) - now
        return remaining <= timedelta(minutes=self._settings.grace_minutes)

    # ──────────────────────────────────────────────
    # Scanning
    # ──────────────────────────────────────────────

    async def scan(self, now: datetime | None = None) -> ScanReport:
        """Evaluate every active, overnight-enabled registration once.

        Registrations with a pending rollback are retried whatever their
        overnight setting, and finished ones that were never persisted
        are written again.
        """
        now = now or self._clock()
        report = ScanReport()
        async with self._scan_lock:
            last_cutoff = self.last_cutoff(now)
            grace = self.in_grace_window(now)
            due: list[tuple[OvernightRegistration, str]] = []

            unpersisted = [
                r for r in self._registrations.values() if r.status != RegistrationStatus.ACTIVE
            ]
            for reg in unpersisted:
                await self._retire(reg)

            for reg in self.active_registrations():
                if reg.rollback_pending:
                    report.checked += 1
                    due.append((reg, reg.close_reason or "overnight_cutoff"))
                    continue
                if not reg.overnight_close_enabled:
                    continue
                report.checked += 1
                if reg.registered_at < last_cutoff <= now:
                    due.append((reg, "overnight_cutoff"))
                elif grace:
                    reason = await self._early_exit_reason(reg, now)
                    if reason is not None:
                        due.append((reg, f"overnight_early_exit:{reason}"))

            if due:
                # Shielded so a shutdown cancel cannot leave a half-applied rollback
                results = await asyncio.shield(
                    asyncio.gather(
                        *(self._force_close(reg, reason) for reg, reason in due),
                        return_exceptions=True,
                    )
                )
                for (reg, _), result in zip(due, results):
                    if isinstance(result, BaseException):
                        report.failed.append(reg.trade_id)
                    elif result == RegistrationStatus.ROLLED_BACK:
                        report.rolled_back.append(reg.trade_id)
                    else:
                        report.closed.append(reg.trade_id)

        if due:
            logger.info(
                "overnight_scan_complete",
                rolled_back=len(report.rolled_back),
                closed=len(report.closed),
                failed=len(report.failed),
            )
        return report

    async def _early_exit_reason(
        self, reg: OvernightRegistration, now: datetime
    ) -> str | None:
        minutes_left = (self.next_cutoff(now) - now).total_seconds() / 60
        if minutes_left <= self._settings.minutes_to_cutoff:
            return "near_cutoff"

        hours_open = (now - reg.registered_at).total_seconds() / 3600
        if hours_open > self._settings.max_hours_open:
            return "max_hours_open"

        try:
            price = await self._venue.get_price(reg.symbol)
        except TradeTreeError:
            return None
        if price <= 0:
            return None
        threshold = self._settings.proximity_threshold
        if abs(price - reg.target) / price < threshold:
            return "near_target"
        if abs(price - reg.stop) / price < threshold:
            return "near_stop"
        return None

    async def _force_close(
        self, reg: OvernightRegistration, reason: str
    ) -> RegistrationStatus:
        if reg.status != RegistrationStatus.ACTIVE:
            return reg.status

        if reg.rollback_pending:
            assert reg.realized_pnl is not None
            fill_price, pnl = reg.close_price, reg.realized_pnl
        else:
            try:
                fill_price, pnl = await self._close_at_market(reg)
            except Exception as exc:
                logger.critical(
                    "overnight_close_failed",
                    trade_id=reg.trade_id,
                    symbol=reg.symbol,
                    error=str(exc),
                )
                self._report(f"Overnight close failed for {reg.trade_id}: {exc}", reg)
                raise

        rolled_back = False
        if self._rollback_handler is not None:
            try:
                rolled_back = await self._rollback_handler(reg, pnl, reason)
            except Exception as exc:
                # Position is flat; only the session rollback is left to do
                first_failure = not reg.rollback_pending
                reg.rollback_pending = True
                reg.close_reason = reason
                reg.close_price = fill_price
                reg.realized_pnl = pnl
                await self._persist(reg)
                logger.error(
                    "overnight_rollback_pending",
                    trade_id=reg.trade_id,
                    session_id=reg.session_id,
                    pnl=str(pnl),
                    error=str(exc),
                )
                if first_failure:
                    self._report(
                        f"Position {reg.trade_id} closed but session "
                        f"{reg.session_id} rollback is pending: {exc}",
                        reg,
                    )
                raise

        status = RegistrationStatus.ROLLED_BACK if rolled_back else RegistrationStatus.CLOSED
        self._finish(reg, status, reason, fill_price, pnl)
        await self._retire(reg)
        logger.warning(
            "overnight_trade_force_closed",
            trade_id=reg.trade_id,
            session_id=reg.session_id,
            reason=reason,
            status=status.value,
            pnl=str(pnl),
        )
        return status

    def _report(self, message: str, reg: OvernightRegistration) -> None:
        if self._alerts is not None:
            self._alerts.report_system_error(
                message, trade_id=reg.trade_id, session_id=reg.session_id
            )

    async def _close_at_market(
        self, reg: OvernightRegistration
    ) -> tuple[Decimal, Decimal]:
        quantity = reg.stake_amount / reg.entry if reg.entry > 0 else Decimal("0")
        fill, _ = await self._retry.call(
            lambda: self._venue.close_position(reg.symbol, reg.action, quantity),
            name="close_position",
        )
        return fill.price, realized_pnl(reg.action, reg.entry, fill.price, reg.stake_amount)

    def _finish(
        self,
        reg: OvernightRegistration,
        status: RegistrationStatus,
        reason: str,
        close_price: Decimal | None,
        pnl: Decimal | None,
    ) -> None:
        reg.status = status
        reg.closed_at = self._clock()
        reg.close_reason = reason
        reg.close_price = close_price
        reg.realized_pnl = pnl
        reg.rollback_pending = False

    async def _persist(self, reg: OvernightRegistration) -> bool:
        try:
            await self._store.save_registration(reg)
        except StoreUnavailableError:
            # In-memory state stays authoritative; the next write carries it
            logger.warning("overnight_registration_not_persisted", trade_id=reg.trade_id)
            return False
        return True

    async def _retire(self, reg: OvernightRegistration) -> None:
        """Persist a finished registration and drop it from the live set.

        Kept live until the write lands; the next scan retries it.
        """
        if await self._persist(reg):
            self._registrations.pop(reg.trade_id, None)
            self._finished.append(reg)

    # ──────────────────────────────────────────────
    # Background loop
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Begin periodic scans in the background."""
        if self._running:
            logger.warning("overnight_guardian_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "overnight_guardian_started",
            cutoff=self._settings.cutoff_time,
            timezone=self._settings.timezone,
        )

    async def stop(self) -> None:
        """Stop scanning. A forced closure already under way still completes."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("overnight_guardian_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.scan()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("overnight_scan_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.scan_interval)
