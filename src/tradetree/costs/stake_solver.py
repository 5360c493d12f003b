"""Stake solver: inverts the cost model to hit a target net profit.

Fixed-point iteration. Starting from the naive stake that ignores costs,
each step computes the net profit the current stake would earn and scales
the stake by ``target / actual``. The loop stops when the net profit is
within tolerance, when the stake hits the risk cap (the cap wins over
convergence), or after ``max_iterations``. Non-convergence is not fatal:
the best stake seen is returned with a warning attached.

Risk cap policy (``max_risk_cap``): the stake is the smaller of a flat
fraction of capital and the stake whose loss at the spread-widened stop
equals the per-trade risk budget. A zero stop distance leaves only the
flat cap.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from tradetree.config import StakingSettings
from tradetree.costs.cost_model import CostBreakdown, CostModel, cost_efficiency
from tradetree.exceptions import DomainInvariantError, ZeroPriceMoveError
from tradetree.logging import get_logger
from tradetree.models import Action

logger = get_logger(__name__)

_ZERO = Decimal("0")
_PIP = Decimal("0.0001")


@dataclass
class StakeSolution:
    """Result of one stake solve."""

    stake: Decimal
    costs: CostBreakdown
    net_profit: Decimal
    iterations: int
    converged: bool
    capped: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class CostCalculationResult:
    """Everything known about a planned trade's stake and costs."""

    nominal_profit: Decimal
    breakdown: CostBreakdown
    total_cost: Decimal
    stake: Decimal
    net_profit: Decimal
    risk_adjusted_stake: Decimal
    max_allowed_stake: Decimal
    iterations: int
    converged: bool
    efficiency: str
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def price_move_ratio(entry_price: Decimal, target_price: Decimal) -> Decimal:
    """Return |target - entry| / entry.

    Raises:
        DomainInvariantError: If the entry price is not positive.
        ZeroPriceMoveError: If entry and target are equal.
    """
    if entry_price <= 0:
        raise DomainInvariantError(f"Entry price must be positive, got {entry_price}")
    if entry_price == target_price:
        raise ZeroPriceMoveError(
            f"Entry and target price are both {entry_price}; no profit to solve for"
        )
    return abs(target_price - entry_price) / entry_price


class StakeSolver:
    """Finds the stake that nets a target profit after venue costs.

    Args:
        cost_model: Cost model for the active venue.
        settings: Solver tolerance, iteration cap and risk cap parameters.
    """

    def __init__(self, cost_model: CostModel, settings: StakingSettings) -> None:
        self._cost_model = cost_model
        self._settings = settings

    @property
    def cost_model(self) -> CostModel:
        return self._cost_model

    def solve_stake(
        self,
        target_net_profit: Decimal,
        entry_price: Decimal,
        target_price: Decimal,
        max_risk_cap: Decimal,
        direction: Action = Action.BUY,
        holding_days: int | None = None,
    ) -> StakeSolution:
        """Solve for the stake whose net profit equals ``target_net_profit``.

        Args:
            target_net_profit: Desired profit after costs, in quote currency.
            entry_price: Expected entry price.
            target_price: Expected exit price on a win.
            max_risk_cap: Upper bound for the stake.
            direction: Trade direction (affects swap costs).
            holding_days: Expected holding period, settings default when None.

        Returns:
            StakeSolution. Its stake is never negative and never above the cap.

        Raises:
            ZeroPriceMoveError: If entry equals target.
            DomainInvariantError: If entry is not positive.
        """
        ratio = price_move_ratio(entry_price, target_price)
        days = self._settings.holding_days if holding_days is None else holding_days
        tolerance = self._settings.tolerance
        cap = max(max_risk_cap, _ZERO)

        def _net(amount: Decimal) -> tuple[CostBreakdown, Decimal]:
            costs = self._cost_model.compute_costs(
                amount, entry_price, target_price, direction, days
            )
            return costs, amount * ratio - costs.total

        if target_net_profit <= 0:
            costs, net = _net(_ZERO)
            return StakeSolution(
                stake=_ZERO,
                costs=costs,
                net_profit=net,
                iterations=0,
                converged=True,
                capped=False,
                warnings=["Target net profit is not positive; no stake placed"],
            )

        stake = target_net_profit / ratio
        if stake > cap:
            costs, net = _net(cap)
            return self._capped(cap, costs, net, 0, "Naive stake exceeds risk cap")

        best: tuple[Decimal, CostBreakdown, Decimal] | None = None
        iterations = 0

        for iterations in range(1, self._settings.max_iterations + 1):
            costs, net = _net(stake)
            if best is None or abs(net - target_net_profit) < abs(best[2] - target_net_profit):
                best = (stake, costs, net)

            if abs(net - target_net_profit) <= tolerance:
                logger.debug(
                    "stake_solver_converged",
                    stake=str(stake),
                    net_profit=str(net),
                    iterations=iterations,
                )
                return StakeSolution(stake, costs, net, iterations, True, False)

            if net <= 0:
                # Costs swallow the whole move; scaling would diverge
                costs, net = _net(cap)
                return self._capped(
                    cap, costs, net, iterations, "Costs exceed gross profit; using risk cap"
                )

            next_stake = stake * (target_net_profit / net)
            if next_stake > cap or next_stake < 0:
                clamped = min(max(next_stake, _ZERO), cap)
                costs, net = _net(clamped)
                return self._capped(
                    clamped, costs, net, iterations, "Stake clamped to risk cap"
                )
            stake = next_stake

        assert best is not None
        best_stake, best_costs, best_net = best
        warning = (
            f"Stake solver did not converge within {self._settings.max_iterations} "
            f"iterations; net profit {best_net:.2f} vs target {target_net_profit:.2f}"
        )
        logger.warning(
            "stake_solver_not_converged",
            stake=str(best_stake),
            net_profit=str(best_net),
            target=str(target_net_profit),
            iterations=iterations,
        )
        return StakeSolution(
            stake=best_stake,
            costs=best_costs,
            net_profit=best_net,
            iterations=iterations,
            converged=False,
            capped=False,
            warnings=[warning],
        )

    @staticmethod
    def _capped(
        stake: Decimal,
        costs: CostBreakdown,
        net: Decimal,
        iterations: int,
        reason: str,
    ) -> StakeSolution:
        logger.info(
            "stake_solver_capped",
            stake=str(stake),
            net_profit=str(net),
            iterations=iterations,
            reason=reason,
        )
        return StakeSolution(
            stake=stake,
            costs=costs,
            net_profit=net,
            iterations=iterations,
            converged=False,
            capped=True,
            warnings=[reason],
        )

    def max_risk_cap(
        self,
        capital: Decimal,
        entry_price: Decimal,
        stop_price: Decimal,
        current_spread: Decimal | None = None,
    ) -> Decimal:
        """Upper bound for a stake given account capital and stop distance.

        Args:
            capital: Account capital the session trades with.
            entry_price: Expected entry price.
            stop_price: Stop-loss price.
            current_spread: Live spread in pips, profile default when None.

        Returns:
            min(capital x max_stake_fraction, capital x max_risk_per_trade /
            widened stop distance). Only the first term when the widened
            distance is zero.
        """
        account_cap = capital * self._settings.max_stake_fraction
        if entry_price <= 0:
            return account_cap

        cfg = self._cost_model.config
        spread = self._cost_model.effective_spread(current_spread)
        spread_fraction = spread * _PIP * cfg.spread_multiplier
        stop_distance = abs(entry_price - stop_price) / entry_price
        widened = stop_distance + spread_fraction
        if widened <= 0:
            return account_cap

        risk_cap = capital * self._settings.max_risk_per_trade / widened
        return min(account_cap, risk_cap)

    def calculate(
        self,
        nominal_profit: Decimal,
        capital: Decimal,
        entry_price: Decimal,
        target_price: Decimal,
        stop_price: Decimal,
        direction: Action = Action.BUY,
        holding_days: int | None = None,
        current_spread: Decimal | None = None,
    ) -> CostCalculationResult:
        """Solve the stake and bundle it with costs, caps and findings.

        Args:
            nominal_profit: Target net profit for the node.
            capital: Account capital for the risk cap.
            entry_price: Expected entry price.
            target_price: Expected exit price on a win.
            stop_price: Stop-loss price.
            direction: Trade direction.
            holding_days: Expected holding period, settings default when None.
            current_spread: Live spread in pips, profile default when None.

        Returns:
            CostCalculationResult. Spread errors are reported, not raised.

        Raises:
            ZeroPriceMoveError: If entry equals target.
        """
        cap = self.max_risk_cap(capital, entry_price, stop_price, current_spread)
        solution = self.solve_stake(
            nominal_profit, entry_price, target_price, cap, direction, holding_days
        )
        warnings, errors = self._cost_model.assess_spread(
            entry_price, stop_price, current_spread
        )
        warnings = [*solution.warnings, *warnings]
        if solution.net_profit < nominal_profit - self._settings.tolerance:
            warnings.append(
                f"Expected net profit {solution.net_profit:.2f} is below target "
                f"{nominal_profit:.2f}"
            )

        total = solution.costs.total
        return CostCalculationResult(
            nominal_profit=nominal_profit,
            breakdown=solution.costs,
            total_cost=total,
            stake=solution.stake,
            net_profit=solution.net_profit,
            risk_adjusted_stake=min(solution.stake, cap),
            max_allowed_stake=cap,
            iterations=solution.iterations,
            converged=solution.converged,
            efficiency=cost_efficiency(total, solution.stake),
            warnings=warnings,
            errors=errors,
        )
