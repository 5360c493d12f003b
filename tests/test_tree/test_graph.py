"""Tests for the static decision tree and its lookup functions."""

from decimal import Decimal

import pytest

from tradetree.exceptions import EdgeUndefinedError, UnknownNodeError
from tradetree.models import Outcome
from tradetree.tree.graph import (
    DECISION_TREE,
    LOST_NODE,
    START_NODE,
    WIN_NODE,
    DecisionNode,
    calculate_value,
    format_percentage,
    get_node,
    is_edge,
    is_terminal,
    next_node_id,
    nodes_at_level,
    outcome_for_edge,
    parse_percentage,
    stake_fraction,
    target_net_profit,
    validate_graph,
)


class TestStructure:
    def test_shipped_table_is_well_formed(self) -> None:
        assert validate_graph() == []

    def test_has_32_nodes(self) -> None:
        assert len(DECISION_TREE) == 32

    def test_terminals_have_no_edges(self) -> None:
        for node_id in (WIN_NODE, LOST_NODE):
            node = get_node(node_id)
            assert node.is_terminal
            assert node.win_edge is None and node.loss_edge is None

    def test_table_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            DECISION_TREE["X"] = get_node(START_NODE)  # type: ignore[index]

    def test_every_non_terminal_edge_goes_one_level_deeper(self) -> None:
        for node in DECISION_TREE.values():
            if node.is_terminal:
                continue
            for edge in (node.win_edge, node.loss_edge):
                child = get_node(edge)
                if not child.is_terminal:
                    assert child.level == node.level + 1

    def test_validate_reports_dangling_edge(self) -> None:
        broken = dict(DECISION_TREE)
        broken["4-5"] = DecisionNode("4-5", Decimal("2.65"), WIN_NODE, "5-5", 10)
        problems = validate_graph(broken)
        assert any("unknown node 5-5" in p for p in problems)

    def test_validate_reports_cycle(self) -> None:
        broken = dict(DECISION_TREE)
        broken["4-5"] = DecisionNode("4-5", Decimal("2.65"), "4-4", LOST_NODE, 10)
        problems = validate_graph(broken)
        assert any("cycle" in p for p in problems)

    def test_nodes_at_level(self) -> None:
        assert {n.id for n in nodes_at_level(2)} == {"1-0", "0-1"}


class TestEdges:
    @pytest.mark.parametrize(
        "node_id,outcome,expected",
        [
            (START_NODE, Outcome.WIN, "1-0"),
            (START_NODE, Outcome.LOSS, "0-1"),
            ("4-0", Outcome.WIN, WIN_NODE),
            ("0-5", Outcome.LOSS, LOST_NODE),
            ("4-5", Outcome.WIN, WIN_NODE),
            ("4-5", Outcome.LOSS, LOST_NODE),
        ],
    )
    def test_next_node(self, node_id: str, outcome: Outcome, expected: str) -> None:
        assert next_node_id(node_id, outcome) == expected

    def test_terminal_has_no_edge(self) -> None:
        with pytest.raises(EdgeUndefinedError):
            next_node_id(WIN_NODE, Outcome.WIN)

    def test_unknown_node(self) -> None:
        with pytest.raises(UnknownNodeError):
            get_node("9-9")

    def test_is_edge(self) -> None:
        assert is_edge(START_NODE, "1-0")
        assert not is_edge(START_NODE, "2-0")
        assert not is_edge("9-9", "1-0")

    def test_outcome_for_edge(self) -> None:
        assert outcome_for_edge("1-1", "2-1") == Outcome.WIN
        assert outcome_for_edge("1-1", "1-2") == Outcome.LOSS
        assert outcome_for_edge("1-1", "3-1") is None

    def test_is_terminal(self) -> None:
        assert is_terminal(LOST_NODE)
        assert not is_terminal(START_NODE)


class TestValues:
    def test_stake_fraction(self) -> None:
        assert stake_fraction(START_NODE) == Decimal("0.0065")

    def test_target_net_profit_start_node(self) -> None:
        assert target_net_profit(START_NODE, Decimal("100000")) == Decimal("650")

    def test_target_net_profit_uses_magnitude(self) -> None:
        assert target_net_profit(LOST_NODE, Decimal("100000")) == Decimal("3310")

    def test_calculate_value_rounds_half_up(self) -> None:
        assert calculate_value(Decimal("0.65"), Decimal("1000")) == Decimal("7")
        assert calculate_value(Decimal("-3.31"), Decimal("100000")) == Decimal("-3310")

    def test_percentage_round_trip(self) -> None:
        assert format_percentage(Decimal("0.65")) == "+0.65%"
        assert format_percentage(Decimal("-3.31")) == "-3.31%"
        assert parse_percentage("+0.65%") == Decimal("0.65")
        assert parse_percentage("-3.31%") == Decimal("-3.31")
