"""Venue cost profiles.

Each profile is an immutable CostModelConfig. Changing venue means
swapping the whole profile object on the CostModel; profiles are never
edited field by field.

Spread, slippage and currency spread are expressed in pips where one pip
is 0.0001 of notional. Swap rates are per standard lot per day and a
negative rate is a charge.
"""

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Literal

CommissionType = Literal["fixed", "percentage", "per_lot"]

ZERO = Decimal("0")


@dataclass(frozen=True)
class CostModelConfig:
    """Per-venue fee, spread, slippage and swap parameters."""

    name: str
    commission_type: CommissionType
    commission_value: Decimal
    commission_min: Decimal = ZERO
    commission_max: Decimal | None = None

    spread_pips: Decimal = ZERO
    max_allowed_spread: Decimal = Decimal("10")
    spread_multiplier: Decimal = Decimal("1")
    spread_widening: Decimal = Decimal("1")
    max_spread_to_stop: Decimal = Decimal("5")

    slippage_pips: Decimal = ZERO
    slippage_multiplier: Decimal = Decimal("1")
    market_impact_rate: Decimal = ZERO

    execution_fee: Decimal = ZERO
    routing_fee: Decimal = ZERO
    liquidity_fee: Decimal = ZERO

    regulatory_fee_rate: Decimal = ZERO
    exchange_fee_rate: Decimal = ZERO
    clearing_fee_rate: Decimal = ZERO

    currency_conversion_rate: Decimal = ZERO
    currency_spread_pips: Decimal = ZERO

    swap_long: Decimal = ZERO
    swap_short: Decimal = ZERO
    weekend_multiplier: Decimal = Decimal("1")
    holiday_multiplier: Decimal = Decimal("1")

    account_maintenance_fee: Decimal = ZERO  # per 30 days held
    lot_size: Decimal = Decimal("100000")


DEMO = CostModelConfig(
    name="demo",
    commission_type="fixed",
    commission_value=Decimal("5"),
    commission_min=Decimal("5"),
    commission_max=Decimal("5"),
    spread_pips=Decimal("3"),
    max_allowed_spread=Decimal("10"),
    spread_multiplier=Decimal("1.5"),
    spread_widening=Decimal("1.2"),
    max_spread_to_stop=Decimal("5"),
    weekend_multiplier=Decimal("1.5"),
    holiday_multiplier=Decimal("2.0"),
)

BINANCE = CostModelConfig(
    name="binance",
    commission_type="percentage",
    commission_value=Decimal("0.1"),
    commission_min=Decimal("1"),
    commission_max=Decimal("1000"),
    spread_pips=Decimal("2"),
    max_allowed_spread=Decimal("8"),
    spread_multiplier=Decimal("2.0"),
    max_spread_to_stop=Decimal("3"),
    slippage_pips=Decimal("0.5"),
    slippage_multiplier=Decimal("1.2"),
    market_impact_rate=Decimal("0.001"),
    exchange_fee_rate=Decimal("0.0001"),
    currency_conversion_rate=Decimal("0.001"),
    currency_spread_pips=Decimal("1"),
    swap_long=Decimal("-0.01"),
    swap_short=Decimal("0.01"),
)

MT5 = CostModelConfig(
    name="mt5",
    commission_type="per_lot",
    commission_value=Decimal("7"),
    commission_min=Decimal("7"),
    commission_max=Decimal("700"),
    spread_pips=Decimal("5"),
    max_allowed_spread=Decimal("15"),
    spread_multiplier=Decimal("1.8"),
    max_spread_to_stop=Decimal("8"),
    slippage_pips=Decimal("2"),
    slippage_multiplier=Decimal("1.3"),
    market_impact_rate=Decimal("0.002"),
    execution_fee=Decimal("2"),
    routing_fee=Decimal("1"),
    liquidity_fee=Decimal("0.5"),
    regulatory_fee_rate=Decimal("0.0002"),
    exchange_fee_rate=Decimal("0.0003"),
    clearing_fee_rate=Decimal("0.0001"),
    currency_conversion_rate=Decimal("0.002"),
    currency_spread_pips=Decimal("2"),
    swap_long=Decimal("-0.02"),
    swap_short=Decimal("0.02"),
    weekend_multiplier=Decimal("2.0"),
    holiday_multiplier=Decimal("2.5"),
    account_maintenance_fee=Decimal("5"),
)

VENUE_COST_PROFILES: MappingProxyType[str, CostModelConfig] = MappingProxyType(
    {profile.name: profile for profile in (DEMO, BINANCE, MT5)}
)


def get_profile(name: str) -> CostModelConfig:
    """Return a built-in cost profile by name.

    Raises:
        KeyError: If no profile has that name.
    """
    try:
        return VENUE_COST_PROFILES[name]
    except KeyError:
        raise KeyError(
            f"Unknown cost profile {name!r}; available: {sorted(VENUE_COST_PROFILES)}"
        ) from None
