"""Static decision tree: node table and pure edge-lookup functions.

The tree is a flat lookup table keyed by node id. Node ids read
"<wins>-<losses>" so "2-1" is two wins and one loss into the session.
Every walk ends in one of two absorbing sinks: ``WIN`` (five wins before
six losses) or ``LOST``.

Stake percentages are signed percent values, so Decimal("0.65") means
0.65% of session capital. Terminal nodes carry the session's final
P/L percentage instead of a stake.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

from tradetree.exceptions import EdgeUndefinedError, UnknownNodeError
from tradetree.models import Outcome

START_NODE = "Start"
WIN_NODE = "WIN"
LOST_NODE = "LOST"


@dataclass(frozen=True)
class DecisionNode:
    """One state of the decision tree."""

    id: str
    stake_percentage: Decimal
    win_edge: str | None
    loss_edge: str | None
    level: int
    is_terminal: bool = False


def _node(node_id: str, pct: str, win: str, loss: str, level: int) -> DecisionNode:
    return DecisionNode(node_id, Decimal(pct), win, loss, level)


_NODES: tuple[DecisionNode, ...] = (
    _node(START_NODE, "0.65", "1-0", "0-1", 1),
    _node("1-0", "0.58", "2-0", "1-1", 2),
    _node("0-1", "0.73", "1-1", "0-2", 2),
    _node("2-0", "0.44", "3-0", "2-1", 3),
    _node("1-1", "0.73", "2-1", "1-2", 3),
    _node("0-2", "0.73", "1-2", "0-3", 3),
    _node("3-0", "0.25", "4-0", "3-1", 4),
    _node("2-1", "0.62", "3-1", "2-2", 4),
    _node("1-2", "0.83", "2-2", "1-3", 4),
    _node("0-3", "0.62", "1-3", "0-4", 4),
    _node("4-0", "0.08", WIN_NODE, "4-1", 5),
    _node("3-1", "0.41", "4-1", "3-2", 5),
    _node("2-2", "0.83", "3-2", "2-3", 5),
    _node("1-3", "0.83", "2-3", "1-4", 5),
    _node("0-4", "0.41", "1-4", "0-5", 5),
    _node("4-1", "0.17", WIN_NODE, "4-2", 6),
    _node("3-2", "0.66", "4-2", "3-3", 6),
    _node("2-3", "0.99", "3-3", "2-4", 6),
    _node("1-4", "0.66", "2-4", "1-5", 6),
    _node("0-5", "0.17", "1-5", LOST_NODE, 6),
    _node("4-2", "0.33", WIN_NODE, "4-3", 7),
    _node("3-3", "0.99", "4-3", "3-4", 7),
    _node("2-4", "0.99", "3-4", "2-5", 7),
    _node("1-5", "0.33", "2-5", LOST_NODE, 7),
    _node("4-3", "0.66", WIN_NODE, "4-4", 8),
    _node("3-4", "1.33", "4-4", "3-5", 8),
    _node("2-5", "0.66", "3-5", LOST_NODE, 8),
    _node("4-4", "1.33", WIN_NODE, "4-5", 9),
    _node("3-5", "1.33", "4-5", LOST_NODE, 9),
    _node("4-5", "2.65", WIN_NODE, LOST_NODE, 10),
    DecisionNode(WIN_NODE, Decimal("2.00"), None, None, 10, is_terminal=True),
    DecisionNode(LOST_NODE, Decimal("-3.31"), None, None, 10, is_terminal=True),
)

DECISION_TREE: MappingProxyType[str, DecisionNode] = MappingProxyType(
    {node.id: node for node in _NODES}
)


def get_node(node_id: str) -> DecisionNode:
    """Return the node with the given id.

    Raises:
        UnknownNodeError: If the id is not part of the tree.
    """
    try:
        return DECISION_TREE[node_id]
    except KeyError:
        raise UnknownNodeError(f"Unknown decision node: {node_id}") from None


def is_terminal(node_id: str) -> bool:
    """Whether the node is one of the absorbing sinks."""
    return get_node(node_id).is_terminal


def next_node_id(node_id: str, outcome: Outcome) -> str:
    """Follow the win or loss edge of a node.

    Args:
        node_id: The node the session currently sits on.
        outcome: Resolved trade outcome.

    Returns:
        Id of the node the edge leads to.

    Raises:
        UnknownNodeError: If ``node_id`` is not part of the tree.
        EdgeUndefinedError: If the node is terminal or lacks the edge.
    """
    node = get_node(node_id)
    edge = node.win_edge if outcome == Outcome.WIN else node.loss_edge
    if edge is None:
        raise EdgeUndefinedError(
            f"Node {node_id} has no {outcome.value} edge"
        )
    return edge


def is_edge(from_node_id: str, to_node_id: str) -> bool:
    """Whether ``to_node_id`` is exactly one edge away from ``from_node_id``."""
    node = DECISION_TREE.get(from_node_id)
    if node is None:
        return False
    return to_node_id in (node.win_edge, node.loss_edge)


def outcome_for_edge(from_node_id: str, to_node_id: str) -> Outcome | None:
    """Return which outcome leads from one node to the other, if any."""
    node = DECISION_TREE.get(from_node_id)
    if node is None:
        return None
    if node.win_edge == to_node_id:
        return Outcome.WIN
    if node.loss_edge == to_node_id:
        return Outcome.LOSS
    return None


def stake_fraction(node_id: str) -> Decimal:
    """Return the node's stake percentage as a fraction (0.65% -> 0.0065)."""
    return get_node(node_id).stake_percentage / Decimal("100")


def target_net_profit(node_id: str, capital: Decimal) -> Decimal:
    """Net profit a win on this node should bring, in currency units."""
    return abs(stake_fraction(node_id)) * capital


def calculate_value(percentage: Decimal, amount: Decimal) -> Decimal:
    """Apply a percent value to an amount, rounded to whole currency units."""
    return (percentage / Decimal("100") * amount).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )


def format_percentage(value: Decimal) -> str:
    """Render a signed percent value such as ``+0.65%`` or ``-3.31%``."""
    sign = "+" if value >= 0 else ""
    return f"{sign}{value:.2f}%"


def parse_percentage(text: str) -> Decimal:
    """Parse a percent string such as ``"+0.65%"`` into Decimal("0.65")."""
    return Decimal(text.strip().rstrip("%").lstrip("+"))


def nodes_at_level(level: int) -> list[DecisionNode]:
    """Return every node at the given level, terminal sinks included."""
    return [node for node in DECISION_TREE.values() if node.level == level]


def validate_graph(nodes: Mapping[str, DecisionNode] = DECISION_TREE) -> list[str]:
    """Check structural properties of a node table.

    Verifies that every edge points to a known node, that exactly two
    terminal sinks exist and have no edges, that non-terminal nodes have
    both edges, and that no cycle exists among non-terminal nodes.

    Returns:
        List of problems found. Empty when the table is well formed.
    """
    problems: list[str] = []
    terminals = [n.id for n in nodes.values() if n.is_terminal]
    if sorted(terminals) != sorted([WIN_NODE, LOST_NODE]):
        problems.append(f"expected terminals WIN and LOST, found {terminals}")

    for node in nodes.values():
        edges = (node.win_edge, node.loss_edge)
        if node.is_terminal:
            if any(e is not None for e in edges):
                problems.append(f"terminal node {node.id} has outgoing edges")
            continue
        for edge in edges:
            if edge is None:
                problems.append(f"node {node.id} is missing an edge")
            elif edge not in nodes:
                problems.append(f"node {node.id} points to unknown node {edge}")

    # Depth-first search for cycles; terminals have no edges so they end every walk
    visiting: set[str] = set()
    done: set[str] = set()

    def _visit(node_id: str) -> None:
        if node_id in done or node_id not in nodes:
            return
        if node_id in visiting:
            problems.append(f"cycle through node {node_id}")
            return
        visiting.add(node_id)
        node = nodes[node_id]
        for edge in (node.win_edge, node.loss_edge):
            if edge is not None:
                _visit(edge)
        visiting.discard(node_id)
        done.add(node_id)

    for node_id in nodes:
        _visit(node_id)

    return problems
