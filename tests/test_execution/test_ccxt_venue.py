"""Tests for CcxtVenue result parsing and error mapping (exchange mocked)."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt_async
import pytest

from tradetree.config import VenueSettings
from tradetree.exceptions import ExecutionError, TransientExecutionError
from tradetree.execution.ccxt_venue import CcxtVenue
from tradetree.execution.price_book import PriceBook
from tradetree.models import Action, OrderRequest


@pytest.fixture
def price_book() -> PriceBook:
    return PriceBook()


@pytest.fixture
def venue(price_book: PriceBook) -> CcxtVenue:
    venue = CcxtVenue(VenueSettings(mode="live", exchange_id="binance"), price_book)
    venue._exchange = MagicMock()
    venue._exchange.create_order = AsyncMock()
    venue._exchange.fetch_ticker = AsyncMock()
    venue._exchange.fetch_balance = AsyncMock()
    return venue


def _order() -> OrderRequest:
    return OrderRequest(
        symbol="BTC/USDT",
        action=Action.BUY,
        amount=Decimal("4500"),
        quantity=Decimal("0.1"),
        reference_price=Decimal("45000"),
        client_order_id="trade_1",
    )


@pytest.mark.asyncio
async def test_fill_parsed_as_decimal(venue: CcxtVenue) -> None:
    venue._exchange.create_order.return_value = {
        "id": "123",
        "filled": 0.1,
        "average": 45010.5,
        "fee": {"cost": 0.45},
    }

    fill = await venue.submit_order(_order())

    assert fill.order_id == "123"
    assert fill.price == Decimal("45010.5")
    assert fill.quantity == Decimal("0.1")
    assert fill.fee == Decimal("0.45")
    kwargs = venue._exchange.create_order.call_args.kwargs
    assert kwargs["params"] == {"clientOrderId": "trade_1"}


@pytest.mark.asyncio
async def test_network_error_is_transient(venue: CcxtVenue) -> None:
    venue._exchange.create_order.side_effect = ccxt_async.NetworkError("reset")

    with pytest.raises(TransientExecutionError):
        await venue.submit_order(_order())


@pytest.mark.asyncio
async def test_exchange_error_is_permanent(venue: CcxtVenue) -> None:
    venue._exchange.create_order.side_effect = ccxt_async.InsufficientFunds("no money")

    with pytest.raises(ExecutionError) as exc_info:
        await venue.submit_order(_order())
    assert not isinstance(exc_info.value, TransientExecutionError)


@pytest.mark.asyncio
async def test_get_price_updates_book(venue: CcxtVenue, price_book: PriceBook) -> None:
    venue._exchange.fetch_ticker.return_value = {"last": 45123.4}

    assert await venue.get_price("BTC/USDT") == Decimal("45123.4")
    assert await price_book.get_price("BTC/USDT") == Decimal("45123.4")


@pytest.mark.asyncio
async def test_spread_in_pips(venue: CcxtVenue) -> None:
    venue._exchange.fetch_ticker.return_value = {"bid": 99.99, "ask": 100.01}

    spread = await venue.get_spread("BTC/USDT")
    assert abs(spread - Decimal("2")) < Decimal("0.0001")


@pytest.mark.asyncio
async def test_balance_in_quote_currency(venue: CcxtVenue) -> None:
    venue._exchange.fetch_balance.return_value = {"total": {"USDT": 1234.5}}
    assert await venue.get_balance() == Decimal("1234.5")


@pytest.mark.asyncio
async def test_close_position_is_reduce_only_opposite_side(venue: CcxtVenue) -> None:
    venue._exchange.create_order.return_value = {"id": "c1", "filled": 0.1, "average": 44000}

    fill = await venue.close_position("BTC/USDT", Action.BUY, Decimal("0.1"))

    kwargs = venue._exchange.create_order.call_args.kwargs
    assert kwargs["side"] == "sell"
    assert kwargs["params"] == {"reduceOnly": True}
    assert fill.price == Decimal("44000")
