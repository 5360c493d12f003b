"""Paper trading venue with simulated fills.

Fills instantly at the PriceBook price (falling back to the order's
reference price), tracks a virtual balance, and never partially fills.
"""

from decimal import Decimal
from uuid import uuid4

from tradetree.exceptions import PriceUnavailableError
from tradetree.execution.price_book import PriceBook
from tradetree.execution.venue import Venue
from tradetree.logging import get_logger
from tradetree.models import Action, OrderRequest, VenueFill

logger = get_logger(__name__)


class PaperVenue(Venue):
    """Simulated venue for paper trading.

    Args:
        price_book: Shared price cache.
        initial_balance: Starting virtual balance in quote currency.
    """

    name = "paper"

    def __init__(self, price_book: PriceBook, initial_balance: Decimal) -> None:
        self._price_book = price_book
        self._balance = initial_balance

    async def connect(self) -> None:
        logger.info("paper_venue_ready", balance=str(self._balance))

    async def close(self) -> None:
        return None

    async def submit_order(self, order: OrderRequest) -> VenueFill:
        """Fill the whole order at the cached price.

        Raises:
            PriceUnavailableError: If neither a cached nor a reference price exists.
        """
        price = await self._price_book.get_price(order.symbol)
        if price is None:
            if order.reference_price <= 0:
                raise PriceUnavailableError(f"No price available for {order.symbol}")
            price = order.reference_price

        order_id = f"paper_{uuid4().hex[:12]}"
        logger.info(
            "paper_order_filled",
            order_id=order_id,
            symbol=order.symbol,
            side=order.action.value,
            quantity=str(order.quantity),
            fill_price=str(price),
        )
        return VenueFill(
            order_id=order_id,
            price=price,
            quantity=order.quantity,
            is_simulated=True,
        )

    async def get_price(self, symbol: str) -> Decimal:
        price = await self._price_book.get_price(symbol)
        if price is None:
            raise PriceUnavailableError(f"No price available for {symbol}")
        return price

    async def get_balance(self) -> Decimal:
        return self._balance

    def adjust_balance(self, delta: Decimal) -> None:
        """Book realized P/L against the virtual balance."""
        self._balance += delta

    async def close_position(
        self, symbol: str, action: Action, quantity: Decimal
    ) -> VenueFill:
        price = await self.get_price(symbol)
        order_id = f"paper_{uuid4().hex[:12]}"
        logger.info(
            "paper_position_closed",
            order_id=order_id,
            symbol=symbol,
            side=action.value,
            quantity=str(quantity),
            fill_price=str(price),
        )
        return VenueFill(order_id=order_id, price=price, quantity=quantity, is_simulated=True)
