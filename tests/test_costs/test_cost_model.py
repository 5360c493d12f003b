"""Tests for the itemized cost model and venue profiles."""

from decimal import Decimal

import pytest

from tradetree.costs.cost_model import ZERO_COSTS, CostModel, cost_efficiency
from tradetree.costs.profiles import BINANCE, DEMO, MT5, get_profile
from tradetree.models import Action


@pytest.fixture
def demo_model() -> CostModel:
    return CostModel(DEMO)


class TestComputeCosts:
    def test_demo_profile_is_commission_plus_spread(self, demo_model: CostModel) -> None:
        costs = demo_model.compute_costs(Decimal("10000"), Decimal("45000"), Decimal("46000"))

        assert costs.commission == Decimal("5")
        assert costs.spread == Decimal("3.0000")
        assert costs.slippage == Decimal("0")
        assert costs.total == Decimal("8.0000")

    def test_zero_stake_costs_nothing(self, demo_model: CostModel) -> None:
        assert demo_model.compute_costs(Decimal("0"), Decimal("45000"), Decimal("46000")) == ZERO_COSTS

    def test_zero_entry_costs_nothing(self, demo_model: CostModel) -> None:
        costs = demo_model.compute_costs(Decimal("1000"), Decimal("0"), Decimal("46000"))
        assert costs.total == Decimal("0")

    def test_total_matches_sum_of_components(self) -> None:
        model = CostModel(MT5)
        costs = model.compute_costs(
            Decimal("50000"), Decimal("1.1"), Decimal("1.12"), Action.BUY, holding_days=14
        )
        parts = costs.as_dict()
        total = parts.pop("total")
        assert total == sum(parts.values(), Decimal("0"))

    def test_percentage_commission_is_clamped(self) -> None:
        model = CostModel(BINANCE)
        small = model.compute_costs(Decimal("100"), Decimal("100"), Decimal("101"))
        large = model.compute_costs(Decimal("5000000"), Decimal("100"), Decimal("101"))

        assert small.commission == BINANCE.commission_min
        assert large.commission == BINANCE.commission_max

    def test_long_swap_is_a_charge_short_a_credit(self) -> None:
        model = CostModel(BINANCE)
        long = model.compute_costs(
            Decimal("100000"), Decimal("1"), Decimal("1.01"), Action.BUY, holding_days=2
        )
        short = model.compute_costs(
            Decimal("100000"), Decimal("1"), Decimal("0.99"), Action.SELL, holding_days=2
        )
        assert long.swap > 0
        assert short.swap < 0

    def test_weekend_swap_after_a_week(self) -> None:
        model = CostModel(MT5)
        costs = model.compute_costs(
            Decimal("100000"), Decimal("1"), Decimal("1.01"), Action.BUY, holding_days=7
        )
        assert costs.weekend_swap > 0
        assert costs.account_maintenance == Decimal("5") * 7 / 30

    def test_use_config_swaps_profile(self, demo_model: CostModel) -> None:
        demo_model.use_config(BINANCE)
        assert demo_model.config.name == "binance"


class TestSpreadAssessment:
    def test_normal_spread_is_clean(self, demo_model: CostModel) -> None:
        warnings, errors = demo_model.assess_spread(Decimal("45000"), Decimal("44000"))
        assert warnings == []
        assert errors == []

    def test_spread_above_maximum_is_an_error(self, demo_model: CostModel) -> None:
        _, errors = demo_model.assess_spread(
            Decimal("45000"), Decimal("44000"), current_spread=Decimal("12")
        )
        assert errors

    def test_wide_spread_warns(self, demo_model: CostModel) -> None:
        warnings, errors = demo_model.assess_spread(
            Decimal("45000"), Decimal("44000"), current_spread=Decimal("6")
        )
        assert errors == []
        assert any("wider than usual" in w for w in warnings)

    def test_tight_stop_warns(self, demo_model: CostModel) -> None:
        warnings, _ = demo_model.assess_spread(Decimal("45000"), Decimal("44990"))
        assert any("stop distance" in w for w in warnings)


class TestHelpers:
    @pytest.mark.parametrize(
        "cost,grade",
        [("5", "excellent"), ("20", "good"), ("40", "fair"), ("80", "poor")],
    )
    def test_cost_efficiency(self, cost: str, grade: str) -> None:
        assert cost_efficiency(Decimal(cost), Decimal("10000")) == grade

    def test_get_profile_unknown(self) -> None:
        with pytest.raises(KeyError):
            get_profile("nope")

    def test_get_profile(self) -> None:
        assert get_profile("mt5") is MT5
