"""Execution coordinator: submits orders with retry and classifies failures.

Transient venue errors are retried with exponential backoff (5s, 10s by
default); anything else fails immediately. A fill whose notional differs
from the request by more than the partial-fill threshold is flagged but
still reported as SUCCESS. Exhausted retries produce a FAILED result that
keeps the last error.

Also owns the account balance cache used to size sessions.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import TYPE_CHECKING

from tradetree.config import ExecutionSettings
from tradetree.execution.retry import RetryPolicy
from tradetree.execution.venue import Venue
from tradetree.logging import get_logger
from tradetree.models import ExecutionResult, ExecutionStatus, OrderRequest
from tradetree.resilience.partial_fill import is_partial_fill

if TYPE_CHECKING:
    from tradetree.alerting.alerts import AlertService

logger = get_logger(__name__)


class ExecutionCoordinator:
    """Submits orders to the venue under a retry policy.

    Args:
        venue: Execution venue (paper or live).
        settings: Retry, partial-fill and balance cache parameters.
        default_balance: Balance used when the venue never answered.
        alert_service: Optional sink for venue health observations.
        policy: Retry policy, built from settings when None.
    """

    def __init__(
        self,
        venue: Venue,
        settings: ExecutionSettings,
        default_balance: Decimal = Decimal("100000"),
        alert_service: AlertService | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._venue = venue
        self._settings = settings
        self._default_balance = default_balance
        self._alerts = alert_service
        self._policy = policy or RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            multiplier=settings.backoff_multiplier,
        )
        self._balance: Decimal | None = None
        self._balance_fetched_at: float = 0.0

    @property
    def venue(self) -> Venue:
        return self._venue

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(self, order: OrderRequest) -> ExecutionResult:
        """Submit an order and report its final status.

        Never raises for venue errors; the error text is kept on the result.

        Args:
            order: Order to submit.

        Returns:
            ExecutionResult with status SUCCESS or FAILED.
        """
        started = time.monotonic()
        try:
            fill, attempts = await self._policy.call(
                lambda: self._venue.submit_order(order),
                name="submit_order",
            )
        except Exception as exc:
            attempts = getattr(exc, "attempts", 1)
            logger.error(
                "order_execution_failed",
                symbol=order.symbol,
                side=order.action.value,
                amount=str(order.amount),
                attempts=attempts,
                error=str(exc),
            )
            self._report_health(False, time.monotonic() - started, str(exc))
            return ExecutionResult(
                status=ExecutionStatus.FAILED,
                attempts=attempts,
                error=str(exc),
            )

        self._report_health(True, time.monotonic() - started, None)

        filled_amount = fill.quantity * order.reference_price
        partial = is_partial_fill(
            order.amount, filled_amount, self._settings.partial_fill_threshold
        )
        if partial:
            logger.warning(
                "partial_fill_detected",
                order_id=fill.order_id,
                requested=str(order.amount),
                filled=str(filled_amount),
            )
        else:
            filled_amount = order.amount

        logger.info(
            "order_executed",
            order_id=fill.order_id,
            symbol=order.symbol,
            side=order.action.value,
            price=str(fill.price),
            quantity=str(fill.quantity),
            attempts=attempts,
        )
        return ExecutionResult(
            status=ExecutionStatus.SUCCESS,
            venue_order_id=fill.order_id,
            actual_price=fill.price,
            actual_quantity=fill.quantity,
            filled_amount=filled_amount,
            attempts=attempts,
            partial_fill=partial,
        )

    def _report_health(self, ok: bool, elapsed: float, error: str | None) -> None:
        if self._alerts is not None:
            self._alerts.record_venue_response(ok, elapsed, error)

    async def get_balance(self, force_refresh: bool = False) -> Decimal:
        """Return the account balance, cached for the configured TTL.

        Falls back to the last known balance, then to the default balance,
        when the venue cannot be queried.
        """
        now = time.monotonic()
        fresh = (
            self._balance is not None
            and now - self._balance_fetched_at < self._settings.balance_cache_seconds
        )
        if fresh and not force_refresh:
            assert self._balance is not None
            return self._balance

        try:
            balance = await self._venue.get_balance()
        except Exception as exc:
            logger.warning("balance_fetch_failed", error=str(exc))
            return self._balance if self._balance is not None else self._default_balance

        if balance <= 0:
            logger.warning("balance_not_positive", balance=str(balance))
            return self._balance if self._balance is not None else self._default_balance

        self._balance = balance
        self._balance_fetched_at = now
        return balance

    def should_rebase(self, session_capital: Decimal, balance: Decimal) -> bool:
        """Whether the balance moved far enough to refresh a session's capital."""
        if session_capital <= 0:
            return True
        change = abs(balance - session_capital) / session_capital
        return change > self._settings.capital_rebase_threshold
