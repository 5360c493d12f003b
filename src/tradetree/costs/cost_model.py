"""Cost model: maps (stake, prices, direction, holding period) to itemized costs.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

``compute_costs`` is a pure function of its inputs and the currently loaded
profile. Each term is computed independently and the total is their sum.
Rate-based exchange fees are charged on both the entry and the exit
notional; everything else is charged once per trade.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal

from tradetree.costs.profiles import CostModelConfig
from tradetree.logging import get_logger
from tradetree.models import Action

logger = get_logger(__name__)

_ZERO = Decimal("0")
_PIP = Decimal("0.0001")


@dataclass(frozen=True)
class CostBreakdown:
    """Itemized trading costs for one trade, in quote currency."""

    commission: Decimal = _ZERO
    spread: Decimal = _ZERO
    slippage: Decimal = _ZERO
    market_impact: Decimal = _ZERO
    execution_fee: Decimal = _ZERO
    routing_fee: Decimal = _ZERO
    liquidity_fee: Decimal = _ZERO
    regulatory_fee: Decimal = _ZERO
    exchange_fee: Decimal = _ZERO
    clearing_fee: Decimal = _ZERO
    currency_conversion: Decimal = _ZERO
    currency_spread: Decimal = _ZERO
    swap: Decimal = _ZERO
    weekend_swap: Decimal = _ZERO
    holiday_swap: Decimal = _ZERO
    account_maintenance: Decimal = _ZERO

    @property
    def total(self) -> Decimal:
        return sum(asdict(self).values(), _ZERO)

    def as_dict(self) -> dict[str, Decimal]:
        """Return every component plus ``total``."""
        items = asdict(self)
        items["total"] = self.total
        return items


ZERO_COSTS = CostBreakdown()


def cost_efficiency(total_cost: Decimal, stake: Decimal) -> str:
    """Grade total cost as a percentage of stake.

    Returns:
        "excellent" under 0.1%, "good" under 0.3%, "fair" under 0.5%,
        otherwise "poor".
    """
    if stake <= 0:
        return "excellent"
    pct = total_cost / stake * Decimal("100")
    if pct < Decimal("0.1"):
        return "excellent"
    if pct < Decimal("0.3"):
        return "good"
    if pct < Decimal("0.5"):
        return "fair"
    return "poor"


class CostModel:
    """Computes trading costs for the currently loaded venue profile.

    Args:
        config: Venue cost profile. Replace it with ``use_config``.
    """

    def __init__(self, config: CostModelConfig) -> None:
        self._config = config

    @property
    def config(self) -> CostModelConfig:
        return self._config

    def use_config(self, config: CostModelConfig) -> None:
        """Swap in a different venue profile."""
        logger.info(
            "cost_profile_changed",
            previous=self._config.name,
            current=config.name,
        )
        self._config = config

    def compute_costs(
        self,
        stake: Decimal,
        entry_price: Decimal,
        target_price: Decimal,
        direction: Action = Action.BUY,
        holding_days: int = 1,
    ) -> CostBreakdown:
        """Compute the itemized cost of a trade.

        Args:
            stake: Notional amount in quote currency.
            entry_price: Expected entry price.
            target_price: Expected exit price, used for exit-side fees.
            direction: Trade direction, selects the swap rate.
            holding_days: Days the position is expected to stay open.

        Returns:
            CostBreakdown. All zero when stake or entry price is zero.
        """
        if stake <= 0 or entry_price <= 0:
            return ZERO_COSTS

        cfg = self._config
        days = Decimal(max(holding_days, 0))
        exit_notional = stake * target_price / entry_price if target_price > 0 else stake
        lots = stake / (entry_price * cfg.lot_size)

        swap_rate = cfg.swap_long if direction == Action.BUY else cfg.swap_short
        # negative rates are charges, positive rates are credits
        daily_swap = -(lots * swap_rate)
        weekend_days = Decimal(int(days) // 7 * 2)
        holiday_days = Decimal(int(days) // 365 * 10)

        return CostBreakdown(
            commission=self._commission(stake, entry_price),
            spread=stake * cfg.spread_pips * _PIP,
            slippage=stake * cfg.slippage_pips * _PIP * cfg.slippage_multiplier,
            market_impact=stake * cfg.market_impact_rate,
            execution_fee=cfg.execution_fee,
            routing_fee=cfg.routing_fee,
            liquidity_fee=cfg.liquidity_fee,
            regulatory_fee=(stake + exit_notional) * cfg.regulatory_fee_rate,
            exchange_fee=(stake + exit_notional) * cfg.exchange_fee_rate,
            clearing_fee=(stake + exit_notional) * cfg.clearing_fee_rate,
            currency_conversion=stake * cfg.currency_conversion_rate,
            currency_spread=stake * cfg.currency_spread_pips * _PIP,
            swap=daily_swap * days,
            weekend_swap=daily_swap * weekend_days * cfg.weekend_multiplier,
            holiday_swap=daily_swap * holiday_days * cfg.holiday_multiplier,
            account_maintenance=cfg.account_maintenance_fee * days / Decimal("30"),
        )

    def _commission(self, stake: Decimal, entry_price: Decimal) -> Decimal:
        cfg = self._config
        if cfg.commission_type == "fixed":
            raw = cfg.commission_value
        elif cfg.commission_type == "percentage":
            raw = stake * cfg.commission_value / Decimal("100")
        else:
            lots = stake / (entry_price * cfg.lot_size)
            raw = lots * cfg.commission_value

        value = max(raw, cfg.commission_min)
        if cfg.commission_max is not None:
            value = min(value, cfg.commission_max)
        return value

    def effective_spread(self, current_spread: Decimal | None = None) -> Decimal:
        """Spread in pips after applying the profile's widening factor."""
        spread = current_spread if current_spread is not None else self._config.spread_pips
        return spread * self._config.spread_widening

    def assess_spread(
        self,
        entry_price: Decimal,
        stop_price: Decimal,
        current_spread: Decimal | None = None,
    ) -> tuple[list[str], list[str]]:
        """Check the spread against the profile limits.

        Args:
            entry_price: Expected entry price.
            stop_price: Stop-loss price.
            current_spread: Live spread in pips, profile default when None.

        Returns:
            Tuple of (warnings, errors).
        """
        cfg = self._config
        warnings: list[str] = []
        errors: list[str] = []
        spread = current_spread if current_spread is not None else cfg.spread_pips

        if spread > cfg.max_allowed_spread:
            errors.append(
                f"Spread {spread} pips exceeds maximum allowed {cfg.max_allowed_spread} pips"
            )
        elif spread > cfg.spread_pips * Decimal("1.5"):
            warnings.append(
                f"Spread {spread} pips is wider than usual ({cfg.spread_pips} pips)"
            )

        if entry_price > 0:
            stop_pips = abs(entry_price - stop_price) / entry_price / _PIP
            if stop_pips > 0:
                ratio = spread * cfg.spread_multiplier / stop_pips * Decimal("100")
                if ratio > cfg.max_spread_to_stop:
                    warnings.append(
                        f"Spread is {ratio:.2f}% of stop distance "
                        f"(limit {cfg.max_spread_to_stop}%)"
                    )
        return warnings, errors
