"""Partial-fill handling.

When a venue fills a different amount than requested, the filled amount
becomes the authoritative stake: the execute step's recorded stake is
overwritten and the open trade carries the filled amount, so the P&L of
the eventual outcome is based on what was actually filled.
"""

from decimal import ROUND_HALF_UP, Decimal

from tradetree.logging import get_logger
from tradetree.models import PartialFillResult, Session, StepAction

logger = get_logger(__name__)


def compute_partial_fill(original_amount: Decimal, filled_amount: Decimal) -> PartialFillResult:
    """Return fill percentage and remaining amount for an order."""
    if original_amount <= 0:
        pct = Decimal("0")
    else:
        pct = (filled_amount / original_amount * Decimal("100")).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    return PartialFillResult(
        original_amount=original_amount,
        filled_amount=filled_amount,
        fill_percentage=pct,
        remaining_amount=max(original_amount - filled_amount, Decimal("0")),
    )


def is_partial_fill(
    original_amount: Decimal, filled_amount: Decimal, threshold: Decimal
) -> bool:
    """Whether the fill deviates from the request by more than ``threshold``."""
    if original_amount <= 0:
        return False
    return abs(filled_amount - original_amount) / original_amount > threshold


def apply_partial_fill(
    session: Session, original_amount: Decimal, filled_amount: Decimal
) -> PartialFillResult:
    """Overwrite the latest execute step's stake with the filled amount.

    The open trade's stake is updated too. Running total is untouched:
    execute steps always carry a zero signed result.

    Returns:
        PartialFillResult describing the fill.
    """
    result = compute_partial_fill(original_amount, filled_amount)
    note = (
        f"Partial fill: {result.fill_percentage}% filled. "
        f"Original: {original_amount:.2f}, Filled: {filled_amount:.2f}"
    )

    for step in reversed(session.path_history):
        if step.action == StepAction.EXECUTE:
            step.stake_applied = filled_amount
            step.note = f"{step.note}; {note}" if step.note else note
            break
    else:
        logger.warning("partial_fill_without_execute_step", session_id=session.session_id)

    if session.open_trade is not None:
        session.open_trade.stake = filled_amount

    logger.warning(
        "partial_fill_applied",
        session_id=session.session_id,
        fill_percentage=str(result.fill_percentage),
        original=str(original_amount),
        filled=str(filled_amount),
    )
    return result
