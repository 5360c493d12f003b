"""Signal-to-state workflow engine.

Ties intake, stake solving, execution, the session state machine, the
failure cache and the overnight guardian together:

1. INTAKE: validate the signal, reject duplicates by external id
2. SESSION: find the symbol's active session or start one on ``Start``
3. SIZE: solve the stake that nets the node's target profit after costs
4. EXECUTE: submit with retry; a FAILED execution is recorded, never advanced
5. REGISTER: hand the open trade to the overnight guardian
6. OUTCOME: on the callback, follow the win/loss edge (node-jump checked)

Concurrency: intake holds a lock per symbol, every session mutation holds
a lock per session id. Work on different sessions runs concurrently.

Persistence: each mutation writes a full session snapshot. Store writes
are retried; when retries exhaust the snapshot goes to the failure cache
and the request still succeeds. Reads consult the cache first because a
cached snapshot is always newer than the stored one.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import uuid4

from tradetree.alerting.alerts import AlertService
from tradetree.config import AppSettings
from tradetree.costs.stake_solver import CostCalculationResult, StakeSolver
from tradetree.exceptions import (
    NodeJumpError,
    SessionBusyError,
    SessionNotFoundError,
    SignalValidationError,
    StoreUnavailableError,
    TradeNotOpenError,
    TransientInfraError,
)
from tradetree.execution.coordinator import ExecutionCoordinator
from tradetree.execution.price_book import PriceBook
from tradetree.execution.retry import RetryPolicy
from tradetree.locks import KeyedLocks
from tradetree.logging import bind_context, get_logger
from tradetree.models import (
    Action,
    ExecutionResult,
    OpenTrade,
    OrderRequest,
    Outcome,
    OvernightRegistration,
    PartialFillResult,
    Session,
    TradeSignal,
    utcnow,
)
from tradetree.overnight.guardian import OvernightGuardian
from tradetree.persistence.store import SessionStore
from tradetree.resilience.cache import MutationCache
from tradetree.resilience.partial_fill import apply_partial_fill, is_partial_fill
from tradetree.signals.normalizer import SignalNormalizer
from tradetree.signals.outcomes import parse_outcome
from tradetree.tree import session_machine
from tradetree.tree.graph import START_NODE, get_node, target_net_profit

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SignalResult:
    """What happened to an accepted signal."""

    success: bool
    session_id: str
    node_id: str
    trade_id: str | None
    stake: Decimal
    calculation: CostCalculationResult | None
    execution: ExecutionResult | None
    warnings: list[str] = field(default_factory=list)
    partial_fill: PartialFillResult | None = None
    cached: bool = False
    error: str | None = None


@dataclass
class OutcomeResult:
    """What happened to a session after an outcome callback."""

    session_id: str
    trade_id: str
    previous_node_id: str
    current_node_id: str
    running_total: Decimal
    completed: bool
    requires_manual_confirmation: bool
    message: str
    cached: bool = False


class TradingWorkflow:
    """Request-driven engine behind the webhooks and session commands.

    Args:
        settings: Application-wide settings.
        store: Durable store.
        cache: Failure cache for snapshots the store refused.
        normalizer: Signal validation.
        solver: Stake solver bound to the active cost profile.
        coordinator: Order execution and balance.
        guardian: Overnight guardian; its rollback handler is wired here.
        alerts: Alert service.
        price_book: Shared price cache, seeded with signal entry prices.
        session_locks: Per-session locks shared with the reconciler.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: SessionStore,
        cache: MutationCache,
        normalizer: SignalNormalizer,
        solver: StakeSolver,
        coordinator: ExecutionCoordinator,
        guardian: OvernightGuardian,
        alerts: AlertService,
        price_book: PriceBook,
        session_locks: KeyedLocks | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._cache = cache
        self._normalizer = normalizer
        self._solver = solver
        self._coordinator = coordinator
        self._guardian = guardian
        self._alerts = alerts
        self._price_book = price_book
        self._session_locks = session_locks or KeyedLocks()
        self._symbol_locks = KeyedLocks()
        self._store_retry = RetryPolicy(
            max_attempts=settings.resilience.store_retry_attempts,
            base_delay=settings.resilience.store_retry_delay,
        )
        guardian.set_rollback_handler(self.handle_forced_close)

    @property
    def session_locks(self) -> KeyedLocks:
        return self._session_locks

    # ──────────────────────────────────────────────
    # Signal intake
    # ──────────────────────────────────────────────

    async def handle_signal(
        self, raw: dict[str, Any], now: datetime | None = None
    ) -> SignalResult:
        """Process one inbound trade signal end to end.

        Args:
            raw: Decoded webhook payload.
            now: Reference time for age checks, current time when None.

        Returns:
            SignalResult. ``success`` is False when the order failed.

        Raises:
            SignalValidationError: Malformed signal (never retried).
            DuplicateSignalError: External id already processed.
            SessionBusyError: The symbol's session still has an open trade.
            SessionCompletedError: Never raised for intake; completed
                sessions are replaced by a new one.
            ManualConfirmationRequired: The session is blocked.
            TransientInfraError: The store could not be read at all.
        """
        external_id = str(raw.get("id", "")).strip()
        is_duplicate = False
        if external_id:
            try:
                is_duplicate = await self._store_call(
                    lambda: self._store.signal_exists(external_id), "signal_exists"
                )
            except StoreUnavailableError:
                logger.warning("duplicate_check_store_unavailable", external_id=external_id)

        signal, warnings = self._normalizer.normalize(raw, now=now, is_duplicate=is_duplicate)
        # Claimed before any await so a concurrent redelivery is rejected
        self._normalizer.mark_processed(signal.external_id)
        self._alerts.check_signal_delay(signal.signal_time, signal.received_at)

        with bind_context(external_id=signal.external_id, symbol=signal.symbol):
            logger.info(
                "signal_received",
                action=signal.action.value,
                timeframe=signal.timeframe,
                entry=str(signal.entry),
            )
            try:
                async with self._symbol_locks.hold(signal.symbol):
                    session, created = await self._active_session(signal.symbol)
                    with bind_context(session_id=session.session_id):
                        async with self._session_locks.hold(session.session_id):
                            if not created:
                                # An outcome may have landed while we waited for the lock
                                session = await self._load_session(session.session_id)
                                await self._maybe_rebase(session)
                            return await self._open_trade(session, signal, warnings)
            except TransientInfraError:
                # Nothing was committed; let the platform redeliver
                self._normalizer.forget(signal.external_id)
                raise

    async def _active_session(self, symbol: str) -> tuple[Session, bool]:
        """Return the symbol's active session and whether it was just created."""
        session = self._cache.find_active(symbol)
        if session is None:
            session = await self._store_call(
                lambda: self._store.find_active_session(symbol), "find_active_session"
            )

        if session is not None:
            return session, False

        balance = await self._coordinator.get_balance()
        session = session_machine.new_session(symbol, balance)
        logger.info(
            "session_created",
            session_id=session.session_id,
            initial_capital=str(balance),
        )
        return session, True

    async def _maybe_rebase(self, session: Session) -> None:
        balance = await self._coordinator.get_balance()
        if session.open_trade is None and self._coordinator.should_rebase(
            session.initial_capital, balance
        ):
            session_machine.annotate(
                session,
                f"Capital rebased from {session.initial_capital} to {balance}",
            )
            logger.info(
                "session_capital_rebased",
                session_id=session.session_id,
                previous=str(session.initial_capital),
                current=str(balance),
            )
            session.initial_capital = balance

    async def _open_trade(
        self, session: Session, signal: TradeSignal, warnings: list[str]
    ) -> SignalResult:
        session_machine.ensure_can_progress(session)
        if session.open_trade is not None:
            raise SessionBusyError(
                f"Session {session.session_id} is waiting on trade "
                f"{session.open_trade.trade_id}"
            )
        try:
            session_machine.ensure_consistent_position(session)
        except NodeJumpError as exc:
            await self._persist(session)
            self._alerts.report_system_error(
                f"Session {session.session_id} blocked: {exc}",
                session_id=session.session_id,
            )
            raise

        node_id = session.current_node_id
        nominal = target_net_profit(node_id, session.initial_capital)
        spread = await self._live_spread(signal.symbol)
        calc = self._solver.calculate(
            nominal,
            session.initial_capital,
            signal.entry,
            signal.target,
            signal.stop,
            direction=signal.action,
            current_spread=spread,
        )
        warnings = [*warnings, *calc.warnings]
        if not calc.is_valid:
            raise SignalValidationError(calc.errors, warnings)
        if calc.stake <= 0:
            raise SignalValidationError(["Calculated stake is zero"], warnings)

        if await self._price_book.is_stale(signal.symbol):
            await self._price_book.update_price(signal.symbol, signal.entry)

        trade_id = f"trade_{uuid4().hex[:12]}"
        order = OrderRequest(
            symbol=signal.symbol,
            action=signal.action,
            amount=calc.stake,
            quantity=calc.stake / signal.entry,
            reference_price=signal.entry,
            client_order_id=trade_id,
        )
        execution = await self._coordinator.execute(order)

        if not execution.succeeded:
            session_machine.record_execution(
                session,
                calc.stake,
                trade_id,
                succeeded=False,
                note=f"Execution failed after {execution.attempts} attempts: {execution.error}",
            )
            cached = await self._persist(session)
            await self._record_signal(signal, session, warnings)
            return SignalResult(
                success=False,
                session_id=session.session_id,
                node_id=node_id,
                trade_id=trade_id,
                stake=calc.stake,
                calculation=calc,
                execution=execution,
                warnings=warnings,
                cached=cached,
                error=execution.error,
            )

        session_machine.record_execution(
            session,
            calc.stake,
            trade_id,
            succeeded=True,
            note=f"{signal.action.value} {signal.symbol} @ {execution.actual_price}",
        )
        trade = OpenTrade(
            trade_id=trade_id,
            external_id=signal.external_id,
            symbol=signal.symbol,
            action=signal.action,
            node_id=node_id,
            entry=signal.entry,
            target=signal.target,
            stop=signal.stop,
            requested_stake=calc.stake,
            stake=calc.stake,
            venue_order_id=execution.venue_order_id,
        )
        session.open_trade = trade

        partial = None
        if execution.partial_fill:
            partial = apply_partial_fill(session, calc.stake, execution.filled_amount)
        self._alerts.check_stake_deviation(calc.stake, trade.stake, session.session_id)

        cached = await self._persist(session)
        await self._record_signal(signal, session, warnings)
        await self._record_costs(session, trade, calc)
        await self._guardian.register(trade, session.session_id, previous_node_id=node_id)

        logger.info(
            "trade_opened",
            trade_id=trade_id,
            node=node_id,
            stake=str(trade.stake),
            expected_net=str(calc.net_profit),
        )
        return SignalResult(
            success=True,
            session_id=session.session_id,
            node_id=node_id,
            trade_id=trade_id,
            stake=trade.stake,
            calculation=calc,
            execution=execution,
            warnings=warnings,
            partial_fill=partial,
            cached=cached,
        )

    async def _live_spread(self, symbol: str) -> Decimal | None:
        try:
            return await self._coordinator.venue.get_spread(symbol)
        except Exception:
            logger.debug("spread_unavailable", symbol=symbol, exc_info=True)
            return None

    async def _record_signal(
        self, signal: TradeSignal, session: Session, warnings: list[str]
    ) -> None:
        try:
            await self._store.save_signal(signal, session.session_id, warnings)
        except StoreUnavailableError:
            logger.warning("signal_record_not_persisted", external_id=signal.external_id)

    async def _record_costs(
        self, session: Session, trade: OpenTrade, calc: CostCalculationResult
    ) -> None:
        try:
            await self._store.record_trade_cost(
                session_id=session.session_id,
                trade_id=trade.trade_id,
                node_id=trade.node_id,
                profile=self._solver.cost_model.config.name,
                stake=trade.stake,
                nominal_profit=calc.nominal_profit,
                net_profit=calc.net_profit,
                breakdown=calc.breakdown.as_dict(),
            )
        except StoreUnavailableError:
            logger.warning("trade_cost_not_persisted", trade_id=trade.trade_id)

    # ──────────────────────────────────────────────
    # Outcome callbacks
    # ──────────────────────────────────────────────

    async def handle_outcome(self, raw: dict[str, Any]) -> OutcomeResult:
        """Apply a trade outcome to its session.

        A node-jump failure is not an error response: the session is rolled
        back, blocked, and the result carries
        ``requires_manual_confirmation=True``.

        Raises:
            SignalValidationError: Malformed callback.
            SessionNotFoundError: Unknown session id.
            SessionCompletedError: Session already terminal.
            TradeNotOpenError: Duplicate or stale callback.
            ManualConfirmationRequired: Session blocked.
        """
        outcome = parse_outcome(raw)
        with bind_context(session_id=outcome.session_id, trade_id=outcome.trade_id):
            async with self._session_locks.hold(outcome.session_id):
                session = await self._load_session(outcome.session_id)
                session_machine.ensure_can_progress(session)

                trade = session.open_trade
                if trade is None or trade.trade_id != outcome.trade_id:
                    logger.info("stale_outcome_rejected")
                    raise TradeNotOpenError(
                        f"Trade {outcome.trade_id} is not open on session {session.session_id}"
                    )

                if outcome.actual_quantity is not None:
                    filled = outcome.actual_quantity * trade.entry
                    threshold = self._settings.execution.partial_fill_threshold
                    if is_partial_fill(trade.stake, filled, threshold):
                        apply_partial_fill(session, trade.stake, filled)

                if (outcome.result == Outcome.WIN) != (outcome.profit_loss >= 0):
                    logger.warning(
                        "outcome_sign_mismatch",
                        result=outcome.result.value,
                        profit_loss=str(outcome.profit_loss),
                    )

                previous = session.current_node_id
                try:
                    session_machine.apply_outcome(
                        session,
                        outcome.result,
                        signed_result=outcome.profit_loss,
                        stake_applied=trade.stake,
                        trade_id=trade.trade_id,
                        note=f"{outcome.exit_reason.value} @ {outcome.exit_price}",
                    )
                except NodeJumpError as exc:
                    cached = await self._persist(session)
                    self._alerts.report_system_error(
                        f"Session {session.session_id} blocked: {exc}",
                        session_id=session.session_id,
                    )
                    return self._outcome_result(
                        session, trade.trade_id, previous, str(exc), cached
                    )

                session.open_trade = None
                cached = await self._persist(session)
                await self._guardian.close(
                    trade.trade_id,
                    reason=outcome.exit_reason.value,
                    close_price=outcome.exit_price,
                    pnl=outcome.profit_loss,
                )
                return self._outcome_result(
                    session,
                    trade.trade_id,
                    previous,
                    f"Moved from {previous} to {session.current_node_id}",
                    cached,
                )

    @staticmethod
    def _outcome_result(
        session: Session, trade_id: str, previous: str, message: str, cached: bool
    ) -> OutcomeResult:
        return OutcomeResult(
            session_id=session.session_id,
            trade_id=trade_id,
            previous_node_id=previous,
            current_node_id=session.current_node_id,
            running_total=session.running_total,
            completed=session.completed,
            requires_manual_confirmation=session.requires_manual_confirmation,
            message=message,
            cached=cached,
        )

    async def handle_forced_close(
        self, reg: OvernightRegistration, pnl: Decimal, reason: str
    ) -> bool:
        """Roll a session back after the guardian force-closed its trade.

        Returns:
            False when the trade was no longer open on the session.
        """
        with bind_context(session_id=reg.session_id, trade_id=reg.trade_id):
            async with self._session_locks.hold(reg.session_id):
                session = await self._load_session(reg.session_id)
                trade = session.open_trade
                if trade is None or trade.trade_id != reg.trade_id:
                    logger.info("forced_close_trade_already_resolved")
                    return False
                session_machine.rollback(
                    session,
                    reg.previous_node_id,
                    reason=f"overnight forced close ({reason})",
                    signed_result=pnl,
                    stake_applied=trade.stake,
                    trade_id=trade.trade_id,
                )
                session.open_trade = None
                await self._persist(session)
                return True

    # ──────────────────────────────────────────────
    # Session administration (never moves the graph position)
    # ──────────────────────────────────────────────

    async def get_session(self, session_id: str) -> Session:
        return await self._load_session(session_id)

    async def list_sessions(self, include_completed: bool = True) -> list[Session]:
        """Stored sessions with cached snapshots taking precedence."""
        stored = await self._store_call(
            lambda: self._store.list_sessions(include_completed), "list_sessions"
        )
        merged = {s.session_id: s for s in stored}
        for entry in self._cache.entries():
            cached = self._cache.get(entry.session_id)
            if cached is not None and (include_completed or not cached.completed):
                merged[cached.session_id] = cached
        return sorted(merged.values(), key=lambda s: s.created_at, reverse=True)

    async def rename_session(self, session_id: str, name: str) -> Session:
        async with self._session_locks.hold(session_id):
            session = await self._load_session(session_id)
            session_machine.rename(session, name)
            await self._persist(session)
            return session

    async def annotate_session(self, session_id: str, note: str) -> Session:
        async with self._session_locks.hold(session_id):
            session = await self._load_session(session_id)
            session_machine.annotate(session, note)
            await self._persist(session)
            return session

    async def confirm_session(self, session_id: str, confirmed_by: str = "operator") -> Session:
        """Operator confirmation that clears a manual-confirmation block."""
        async with self._session_locks.hold(session_id):
            session = await self._load_session(session_id)
            session_machine.confirm(session, confirmed_by)
            await self._persist(session)
            return session

    async def delete_session(self, session_id: str) -> bool:
        async with self._session_locks.hold(session_id):
            in_cache = session_id in self._cache
            self._cache.remove(session_id)
            deleted = await self._store_call(
                lambda: self._store.delete_session(session_id), "delete_session"
            )
            return deleted or in_cache

    # ──────────────────────────────────────────────
    # Cost quotes
    # ──────────────────────────────────────────────

    async def quote(
        self,
        entry: Decimal,
        target: Decimal,
        stop: Decimal,
        action: Action = Action.BUY,
        node_id: str = START_NODE,
        capital: Decimal | None = None,
        holding_days: int | None = None,
    ) -> CostCalculationResult:
        """Stake and cost preview for a hypothetical trade. No side effects."""
        get_node(node_id)
        capital = capital if capital is not None else await self._coordinator.get_balance()
        return self._solver.calculate(
            target_net_profit(node_id, capital),
            capital,
            entry,
            target,
            stop,
            direction=action,
            holding_days=holding_days,
        )

    # ──────────────────────────────────────────────
    # Persistence helpers
    # ──────────────────────────────────────────────

    async def _store_call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        result, _ = await self._store_retry.call(operation, name=name)
        return result

    async def _load_session(self, session_id: str) -> Session:
        session = self._cache.get(session_id)
        if session is None:
            session = await self._store_call(
                lambda: self._store.get_session(session_id), "get_session"
            )
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def _persist(self, session: Session) -> bool:
        """Write a snapshot; fall back to the failure cache.

        Returns:
            True when the snapshot was cached instead of stored.
        """
        session.updated_at = utcnow()
        try:
            await self._store_call(lambda: self._store.save_session(session), "save_session")
        except StoreUnavailableError as exc:
            self._cache.put(session, str(exc))
            return True
        self._cache.remove(session.session_id)
        return False
