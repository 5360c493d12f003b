"""Decision tree layer -- static node table and the session state machine."""

from tradetree.tree.graph import (
    DECISION_TREE,
    LOST_NODE,
    START_NODE,
    WIN_NODE,
    DecisionNode,
    get_node,
    is_edge,
    is_terminal,
    next_node_id,
    stake_fraction,
    target_net_profit,
)

__all__ = [
    "DECISION_TREE",
    "LOST_NODE",
    "START_NODE",
    "WIN_NODE",
    "DecisionNode",
    "get_node",
    "is_edge",
    "is_terminal",
    "next_node_id",
    "stake_fraction",
    "target_net_profit",
]
