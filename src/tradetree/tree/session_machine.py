"""Session state machine: applies validated transitions to a Session.

Every function here mutates the Session in memory only. Persisting the
result is the caller's job (see ``tradetree.workflow``). The state machine
keeps two invariants:

- ``running_total`` equals the sum of ``signed_result`` over the path.
- win/loss steps only ever follow an edge of the decision tree.

Rollback and audit steps may move the session to any earlier node, but
they always leave a record in the path history.
"""

from decimal import Decimal
from uuid import uuid4

from tradetree.exceptions import (
    ManualConfirmationRequired,
    NodeJumpError,
    SessionCompletedError,
    UnknownNodeError,
)
from tradetree.logging import get_logger
from tradetree.models import (
    Outcome,
    PathStep,
    Session,
    StepAction,
    utcnow,
)
from tradetree.tree.graph import (
    START_NODE,
    get_node,
    is_edge,
    next_node_id,
    outcome_for_edge,
)

logger = get_logger(__name__)


def new_session(
    symbol: str,
    initial_capital: Decimal,
    name: str = "",
    session_id: str | None = None,
) -> Session:
    """Create a session sitting on the start node."""
    return Session(
        session_id=session_id or f"sess_{uuid4().hex[:16]}",
        symbol=symbol,
        name=name or f"{symbol} session",
        current_node_id=START_NODE,
        initial_capital=initial_capital,
    )


def last_known_good_node(session: Session) -> str:
    """Return the node recorded by the latest path step, or the start node."""
    step = session.last_step
    return step.node_id if step is not None else START_NODE


def _append_step(
    session: Session,
    *,
    from_node_id: str,
    node_id: str,
    action: StepAction,
    stake_applied: Decimal,
    signed_result: Decimal,
    note: str = "",
    trade_id: str | None = None,
    status: str | None = None,
) -> PathStep:
    step = PathStep(
        step_number=len(session.path_history) + 1,
        from_node_id=from_node_id,
        node_id=node_id,
        action=action,
        stake_applied=stake_applied,
        signed_result=signed_result,
        note=note,
        trade_id=trade_id,
        status=status,
    )
    session.path_history.append(step)
    session.running_total += signed_result
    session.updated_at = step.timestamp
    return step


def ensure_can_progress(session: Session) -> None:
    """Reject outcome-driven mutation of completed or blocked sessions.

    Raises:
        SessionCompletedError: If the session sits on a terminal node.
        ManualConfirmationRequired: If an operator must confirm first.
    """
    if session.completed:
        raise SessionCompletedError(
            f"Session {session.session_id} is completed at {session.current_node_id}"
        )
    if session.requires_manual_confirmation:
        raise ManualConfirmationRequired(
            f"Session {session.session_id} requires manual confirmation: "
            f"{session.blocked_reason}"
        )


def ensure_consistent_position(session: Session) -> None:
    """Check ``current_node_id`` against the last node in the path history.

    Every in-band move appends a step, so the two only differ after an
    out-of-band write. On a mismatch the session is rolled back to the
    last known good node and blocked for manual confirmation.

    Raises:
        NodeJumpError: If the session was moved outside the state machine.
            The session has already been rolled back when this is raised.
    """
    good_node = last_known_good_node(session)
    if session.current_node_id == good_node:
        return
    moved_to = session.current_node_id
    error = NodeJumpError(good_node, moved_to)
    rollback(session, good_node, reason=str(error), require_confirmation=True)
    logger.error(
        "node_position_mismatch",
        session_id=session.session_id,
        expected=good_node,
        found=moved_to,
    )
    raise error


def validate_node_jump(
    from_node_id: str,
    to_node_id: str,
    outcome: Outcome | None = None,
) -> None:
    """Verify a transition is exactly one edge of the decision tree.

    Uses the authoritative edge table rather than level arithmetic, so a
    jump between two nodes one level apart but not connected still fails.
    When ``outcome`` is given the edge must also be that outcome's edge.

    Raises:
        NodeJumpError: If no single edge connects the two nodes.
    """
    if not is_edge(from_node_id, to_node_id):
        raise NodeJumpError(from_node_id, to_node_id)
    if outcome is not None and outcome_for_edge(from_node_id, to_node_id) != outcome:
        raise NodeJumpError(from_node_id, to_node_id)


def record_execution(
    session: Session,
    stake: Decimal,
    trade_id: str,
    succeeded: bool,
    note: str = "",
) -> PathStep:
    """Append an execute step. It never moves the session off its node."""
    node = session.current_node_id
    return _append_step(
        session,
        from_node_id=node,
        node_id=node,
        action=StepAction.EXECUTE,
        stake_applied=stake,
        signed_result=Decimal("0"),
        note=note,
        trade_id=trade_id,
        status="executed" if succeeded else "failed",
    )


def apply_outcome(
    session: Session,
    outcome: Outcome,
    signed_result: Decimal,
    stake_applied: Decimal,
    trade_id: str | None = None,
    note: str = "",
) -> str:
    """Advance the session along the outcome's edge.

    The edge is followed from the last node recorded in the path history,
    and the result is checked against the session's current node. When the
    two disagree (an out-of-band update moved ``current_node_id``), the
    transition is refused, the session is rolled back to its last known
    good node and blocked for manual confirmation.

    Args:
        session: Session to mutate.
        outcome: Resolved result of the trade.
        signed_result: Realized P/L of the trade, positive on wins.
        stake_applied: Filled stake the result was earned on.
        trade_id: Trade the outcome belongs to.
        note: Free text stored on the step.

    Returns:
        The node id the session now sits on.

    Raises:
        SessionCompletedError: If the session is already terminal.
        ManualConfirmationRequired: If the session is blocked.
        EdgeUndefinedError: If the node lacks the outcome's edge.
        NodeJumpError: If the node-jump check fails. The session has
            already been rolled back when this is raised.
    """
    ensure_can_progress(session)

    good_node = last_known_good_node(session)
    try:
        target = next_node_id(session.current_node_id, outcome)
    except UnknownNodeError:
        target = session.current_node_id

    try:
        validate_node_jump(good_node, target, outcome)
    except NodeJumpError as exc:
        rollback(
            session,
            good_node,
            reason=str(exc),
            require_confirmation=True,
        )
        logger.error(
            "node_jump_rejected",
            session_id=session.session_id,
            from_node=good_node,
            to_node=target,
        )
        raise

    from_node = session.current_node_id
    _append_step(
        session,
        from_node_id=from_node,
        node_id=target,
        action=StepAction.WIN if outcome == Outcome.WIN else StepAction.LOSS,
        stake_applied=stake_applied,
        signed_result=signed_result,
        note=note,
        trade_id=trade_id,
    )
    session.current_node_id = target

    if get_node(target).is_terminal:
        session.completed = True
        logger.info(
            "session_completed",
            session_id=session.session_id,
            terminal=target,
            running_total=str(session.running_total),
        )
    else:
        logger.info(
            "session_advanced",
            session_id=session.session_id,
            from_node=from_node,
            to_node=target,
            outcome=outcome.value,
        )
    return target


def rollback(
    session: Session,
    target_node_id: str,
    reason: str,
    signed_result: Decimal = Decimal("0"),
    stake_applied: Decimal = Decimal("0"),
    require_confirmation: bool = False,
    trade_id: str | None = None,
) -> PathStep:
    """Move the session back to ``target_node_id`` and record why.

    The audit step carries ``signed_result`` so any P/L realized while
    rolling back (a forced overnight close) stays in the running total.
    """
    get_node(target_node_id)
    from_node = session.current_node_id
    step = _append_step(
        session,
        from_node_id=from_node,
        node_id=target_node_id,
        action=StepAction.ROLLBACK,
        stake_applied=stake_applied,
        signed_result=signed_result,
        note=f"Rollback executed: {reason}",
        trade_id=trade_id,
    )
    session.current_node_id = target_node_id
    session.completed = get_node(target_node_id).is_terminal
    if require_confirmation:
        session.requires_manual_confirmation = True
        session.blocked_reason = reason
    logger.warning(
        "session_rolled_back",
        session_id=session.session_id,
        from_node=from_node,
        to_node=target_node_id,
        reason=reason,
        requires_manual_confirmation=require_confirmation,
    )
    return step


def confirm(session: Session, confirmed_by: str = "operator") -> None:
    """Clear the manual-confirmation block of a session."""
    if not session.requires_manual_confirmation:
        return
    annotate(
        session,
        f"Confirmed by {confirmed_by} at node {session.current_node_id}: "
        f"{session.blocked_reason}",
    )
    session.requires_manual_confirmation = False
    session.blocked_reason = ""
    logger.info(
        "session_confirmed",
        session_id=session.session_id,
        confirmed_by=confirmed_by,
    )


def annotate(session: Session, note: str) -> None:
    """Attach a free-text note. Allowed on completed sessions too."""
    session.notes.append(note)
    session.updated_at = utcnow()


def rename(session: Session, name: str) -> None:
    """Change the display name. Never touches the graph position."""
    session.name = name
    session.updated_at = utcnow()


def verify_invariants(session: Session) -> list[str]:
    """Check the running total and edge invariants of a session.

    Returns:
        List of violations found. Empty when the session is consistent.
    """
    problems: list[str] = []
    total = sum((s.signed_result for s in session.path_history), Decimal("0"))
    if total != session.running_total:
        problems.append(
            f"running total {session.running_total} != path sum {total}"
        )
    previous_node = START_NODE
    for step in session.path_history:
        # Rollback steps record where the session was found, which may be off-path
        if step.action != StepAction.ROLLBACK and step.from_node_id != previous_node:
            problems.append(
                f"step {step.step_number} starts at {step.from_node_id}, "
                f"previous step ended at {previous_node}"
            )
        if step.action in (StepAction.WIN, StepAction.LOSS):
            if not is_edge(step.from_node_id, step.node_id):
                problems.append(
                    f"step {step.step_number} jumps {step.from_node_id} -> {step.node_id}"
                )
        previous_node = step.node_id
    if session.current_node_id != previous_node:
        problems.append(
            f"current node {session.current_node_id} != last recorded node {previous_node}"
        )
    return problems
