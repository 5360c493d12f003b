"""Live venue via ccxt async.

Wraps any ccxt async exchange by id. All monetary values are converted
through Decimal(str(value)) to avoid float precision loss.
"""

from decimal import Decimal

import ccxt.async_support as ccxt_async

from tradetree.config import VenueSettings
from tradetree.exceptions import (
    ExecutionError,
    PriceUnavailableError,
    TransientExecutionError,
)
from tradetree.execution.price_book import PriceBook
from tradetree.execution.venue import Venue
from tradetree.logging import get_logger
from tradetree.models import Action, OrderRequest, VenueFill

logger = get_logger(__name__)


def _decimal(value: object) -> Decimal:
    return Decimal(str(value)) if value not in (None, "") else Decimal("0")


class CcxtVenue(Venue):
    """Live venue backed by a ccxt async exchange.

    Args:
        settings: Exchange id, credentials and sandbox flag.
        price_book: Shared price cache, refreshed on every ticker fetch.
        quote_currency: Currency the balance is reported in.
    """

    def __init__(
        self,
        settings: VenueSettings,
        price_book: PriceBook,
        quote_currency: str = "USDT",
    ) -> None:
        self._settings = settings
        self._price_book = price_book
        self._quote_currency = quote_currency

        exchange_class = getattr(ccxt_async, settings.exchange_id)
        self._exchange = exchange_class(
            {
                "apiKey": settings.api_key.get_secret_value(),
                "secret": settings.api_secret.get_secret_value(),
                "enableRateLimit": True,
            }
        )
        if settings.sandbox:
            self._exchange.set_sandbox_mode(True)
        self.name = settings.exchange_id

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info("connecting_to_venue", exchange=self.name)
        markets = await self._exchange.load_markets()
        logger.info("venue_connected", exchange=self.name, market_count=len(markets))

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("venue_connection_closed", exchange=self.name)

    async def submit_order(self, order: OrderRequest) -> VenueFill:
        """Place a market order and parse the ccxt result.

        Raises:
            TransientExecutionError: On ccxt network-level failures.
            ExecutionError: When the exchange rejects the order.
        """
        try:
            result = await self._exchange.create_order(
                symbol=order.symbol,
                type="market",
                side=order.action.value,
                amount=float(order.quantity),
                params={"clientOrderId": order.client_order_id} if order.client_order_id else {},
            )
        except ccxt_async.NetworkError as exc:
            raise TransientExecutionError(f"network error: {exc}") from exc
        except ccxt_async.ExchangeError as exc:
            raise ExecutionError(str(exc)) from exc

        return self._parse_fill(result, order.reference_price)

    def _parse_fill(self, result: dict, fallback_price: Decimal) -> VenueFill:
        order_id = str(result.get("id", ""))
        filled = _decimal(result.get("filled"))
        average = result.get("average") or result.get("price")
        price = _decimal(average) if average else fallback_price
        fee_info = result.get("fee") or {}
        fee = _decimal(fee_info.get("cost"))

        logger.info(
            "live_order_filled",
            order_id=order_id,
            exchange=self.name,
            quantity=str(filled),
            fill_price=str(price),
            fee=str(fee),
        )
        return VenueFill(order_id=order_id, price=price, quantity=filled, fee=fee)

    async def get_price(self, symbol: str) -> Decimal:
        try:
            ticker = await self._exchange.fetch_ticker(symbol)
        except ccxt_async.NetworkError as exc:
            raise TransientExecutionError(f"network error: {exc}") from exc
        except ccxt_async.ExchangeError as exc:
            raise PriceUnavailableError(str(exc)) from exc

        last = ticker.get("last") or ticker.get("close")
        if last is None:
            raise PriceUnavailableError(f"No price available for {symbol}")
        price = _decimal(last)
        await self._price_book.update_price(symbol, price)
        return price

    async def get_spread(self, symbol: str) -> Decimal | None:
        ticker = await self._exchange.fetch_ticker(symbol)
        bid, ask = ticker.get("bid"), ticker.get("ask")
        if not bid or not ask:
            return None
        bid_d, ask_d = _decimal(bid), _decimal(ask)
        mid = (bid_d + ask_d) / 2
        return (ask_d - bid_d) / mid / Decimal("0.0001")

    async def get_balance(self) -> Decimal:
        try:
            balance = await self._exchange.fetch_balance()
        except ccxt_async.NetworkError as exc:
            raise TransientExecutionError(f"network error: {exc}") from exc
        total = balance.get("total") or {}
        return _decimal(total.get(self._quote_currency))

    async def close_position(
        self, symbol: str, action: Action, quantity: Decimal
    ) -> VenueFill:
        """Trade the opposite side of ``action`` for ``quantity`` at market."""
        side = "sell" if action == Action.BUY else "buy"
        try:
            result = await self._exchange.create_order(
                symbol=symbol,
                type="market",
                side=side,
                amount=float(quantity),
                params={"reduceOnly": True},
            )
        except ccxt_async.NetworkError as exc:
            raise TransientExecutionError(f"network error: {exc}") from exc
        except ccxt_async.ExchangeError as exc:
            raise ExecutionError(str(exc)) from exc
        fallback = await self._price_book.get_price(symbol) or Decimal("0")
        return self._parse_fill(result, fallback)
