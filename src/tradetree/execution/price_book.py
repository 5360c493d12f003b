"""Shared in-memory price cache.

Async-safe via asyncio.Lock. The paper venue fills from it, the overnight
guardian reads it for proximity checks, and webhook intake seeds it with
signal entry prices so paper mode works without a market feed.
"""

import asyncio
import time
from decimal import Decimal


class PriceBook:
    """Latest price and timestamp per symbol, with staleness detection."""

    def __init__(self) -> None:
        self._prices: dict[str, tuple[Decimal, float]] = {}
        self._lock = asyncio.Lock()

    async def update_price(
        self, symbol: str, price: Decimal, timestamp: float | None = None
    ) -> None:
        """Store the latest price for a symbol."""
        async with self._lock:
            self._prices[symbol] = (price, timestamp if timestamp is not None else time.time())

    async def get_price(self, symbol: str) -> Decimal | None:
        """Return the latest cached price for a symbol, or None if not cached."""
        async with self._lock:
            entry = self._prices.get(symbol)
            return entry[0] if entry is not None else None

    async def get_price_age(self, symbol: str) -> float | None:
        """Return seconds since the last update, or None if never priced."""
        async with self._lock:
            entry = self._prices.get(symbol)
            if entry is None:
                return None
            return time.time() - entry[1]

    async def is_stale(self, symbol: str, max_age_seconds: float = 60.0) -> bool:
        """True when the symbol has no price or it is older than ``max_age_seconds``."""
        age = await self.get_price_age(symbol)
        if age is None:
            return True
        return age > max_age_seconds
