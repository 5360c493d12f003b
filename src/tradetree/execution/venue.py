"""Abstract venue interface.

Both PaperVenue and CcxtVenue implement this ABC, so the execution
coordinator and the overnight guardian are identical regardless of
trading mode. The concrete venue is injected at startup based on
VenueSettings.mode.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from tradetree.models import Action, OrderRequest, VenueFill


class Venue(ABC):
    """Abstract base class for execution venues."""

    name: str = "venue"

    @abstractmethod
    async def connect(self) -> None:
        """Initialize the connection (load markets for live venues)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the venue."""
        ...

    @abstractmethod
    async def submit_order(self, order: OrderRequest) -> VenueFill:
        """Submit a market order and return its fill.

        Raises:
            ExecutionError: If the venue rejects the order.
            PriceUnavailableError: If no price is known for the symbol.
        """
        ...

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """Return the best available market price.

        Raises:
            PriceUnavailableError: If no price can be obtained.
        """
        ...

    @abstractmethod
    async def get_balance(self) -> Decimal:
        """Return the account balance in quote currency."""
        ...

    @abstractmethod
    async def close_position(
        self, symbol: str, action: Action, quantity: Decimal
    ) -> VenueFill:
        """Close an open position by trading the opposite side at market."""
        ...

    async def get_spread(self, symbol: str) -> Decimal | None:
        """Return the live spread in pips, or None when the venue cannot tell."""
        return None
