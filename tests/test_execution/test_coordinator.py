"""Tests for ExecutionCoordinator order submission and balance caching.

Verifies:
- Transient failures are retried, permanent ones fail immediately
- Exhausted retries give a FAILED result carrying the last error
- Partial fills are flagged with the filled notional
- Balance cache, fallbacks and rebase threshold
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tradetree.config import ExecutionSettings
from tradetree.exceptions import ExecutionError, TransientExecutionError
from tradetree.execution.coordinator import ExecutionCoordinator
from tradetree.execution.venue import Venue
from tradetree.models import Action, ExecutionStatus, OrderRequest, VenueFill


def _order(amount: str = "30000") -> OrderRequest:
    amount_dec = Decimal(amount)
    return OrderRequest(
        symbol="BTCUSDT",
        action=Action.BUY,
        amount=amount_dec,
        quantity=amount_dec / Decimal("45000"),
        reference_price=Decimal("45000"),
        client_order_id="trade_1",
    )


def _fill(quantity: Decimal) -> VenueFill:
    return VenueFill(order_id="ord-1", price=Decimal("45010"), quantity=quantity)


@pytest.fixture
def venue() -> MagicMock:
    mock = MagicMock(spec=Venue)
    mock.submit_order = AsyncMock()
    mock.get_balance = AsyncMock(return_value=Decimal("100000"))
    return mock


@pytest.fixture
def alerts() -> MagicMock:
    return MagicMock()


@pytest.fixture
def coordinator(venue: MagicMock, alerts: MagicMock) -> ExecutionCoordinator:
    return ExecutionCoordinator(venue, ExecutionSettings(), alert_service=alerts)


class TestExecute:
    @pytest.mark.asyncio()
    async def test_full_fill(self, coordinator, venue, alerts) -> None:
        order = _order()
        venue.submit_order.return_value = _fill(order.quantity)

        result = await coordinator.execute(order)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.venue_order_id == "ord-1"
        assert result.filled_amount == order.amount
        assert not result.partial_fill
        assert result.attempts == 1
        alerts.record_venue_response.assert_called_once()
        assert alerts.record_venue_response.call_args.args[0] is True

    @pytest.mark.asyncio()
    async def test_partial_fill_is_flagged(self, coordinator, venue) -> None:
        venue.submit_order.return_value = _fill(Decimal("0.5"))

        result = await coordinator.execute(_order())

        assert result.succeeded
        assert result.partial_fill
        assert result.filled_amount == Decimal("22500.0")

    @pytest.mark.asyncio()
    async def test_transient_failure_then_success(self, coordinator, venue) -> None:
        order = _order()
        venue.submit_order.side_effect = [TransientExecutionError("timeout"), _fill(order.quantity)]

        with patch("tradetree.execution.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await coordinator.execute(order)

        assert result.succeeded
        assert result.attempts == 2
        sleep.assert_awaited_once_with(5.0)

    @pytest.mark.asyncio()
    async def test_exhausted_retries_fail(self, coordinator, venue, alerts) -> None:
        venue.submit_order.side_effect = TransientExecutionError("network down")

        with patch("tradetree.execution.retry.asyncio.sleep", new_callable=AsyncMock):
            result = await coordinator.execute(_order())

        assert result.status == ExecutionStatus.FAILED
        assert result.attempts == 3
        assert result.error == "network down"
        assert alerts.record_venue_response.call_args.args[0] is False

    @pytest.mark.asyncio()
    async def test_permanent_failure_is_not_retried(self, coordinator, venue) -> None:
        venue.submit_order.side_effect = ExecutionError("insufficient funds")

        result = await coordinator.execute(_order())

        assert not result.succeeded
        assert result.attempts == 1
        assert venue.submit_order.await_count == 1


class TestBalance:
    @pytest.mark.asyncio()
    async def test_balance_is_cached(self, coordinator, venue) -> None:
        assert await coordinator.get_balance() == Decimal("100000")
        await coordinator.get_balance()
        assert venue.get_balance.await_count == 1

    @pytest.mark.asyncio()
    async def test_force_refresh(self, coordinator, venue) -> None:
        await coordinator.get_balance()
        venue.get_balance.return_value = Decimal("90000")
        assert await coordinator.get_balance(force_refresh=True) == Decimal("90000")

    @pytest.mark.asyncio()
    async def test_falls_back_to_last_known(self, coordinator, venue) -> None:
        await coordinator.get_balance()
        venue.get_balance.side_effect = ExecutionError("down")
        assert await coordinator.get_balance(force_refresh=True) == Decimal("100000")

    @pytest.mark.asyncio()
    async def test_falls_back_to_default(self, venue) -> None:
        venue.get_balance.side_effect = ExecutionError("down")
        coordinator = ExecutionCoordinator(
            venue, ExecutionSettings(), default_balance=Decimal("5000")
        )
        assert await coordinator.get_balance() == Decimal("5000")

    def test_should_rebase(self, coordinator) -> None:
        assert not coordinator.should_rebase(Decimal("100000"), Decimal("103000"))
        assert coordinator.should_rebase(Decimal("100000"), Decimal("110000"))
