"""Validation of outcome callbacks reported when a trade leaves the market."""

from decimal import Decimal, InvalidOperation
from typing import Any

from tradetree.exceptions import SignalValidationError
from tradetree.models import ExitReason, Outcome, TradeOutcome
from tradetree.signals.normalizer import parse_signal_time

REQUIRED_OUTCOME_FIELDS = (
    "trade_id",
    "session_id",
    "result",
    "exit_price",
    "profit_loss",
    "exit_reason",
    "exited_at",
)


def _decimal(raw: dict[str, Any], name: str, errors: list[str]) -> Decimal | None:
    value = raw.get(name)
    if value is None:
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        errors.append(f"Field '{name}' must be numeric")
        return None
    if not result.is_finite():
        errors.append(f"Field '{name}' must be numeric")
        return None
    return result


def parse_outcome(raw: dict[str, Any]) -> TradeOutcome:
    """Validate an outcome callback payload.

    Raises:
        SignalValidationError: With every problem found.
    """
    errors: list[str] = []
    for name in REQUIRED_OUTCOME_FIELDS:
        value = raw.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"Missing required field: {name}")

    result = str(raw.get("result", "")).strip().lower()
    if raw.get("result") is not None and result not in {o.value for o in Outcome}:
        errors.append(f"Invalid result '{raw.get('result')}'; expected win or loss")

    reason = str(raw.get("exit_reason", "")).strip().lower()
    if raw.get("exit_reason") is not None and reason not in {r.value for r in ExitReason}:
        errors.append(f"Invalid exit_reason '{raw.get('exit_reason')}'")

    exit_price = _decimal(raw, "exit_price", errors)
    if exit_price is not None and exit_price <= 0:
        errors.append("Field 'exit_price' must be positive")
    profit_loss = _decimal(raw, "profit_loss", errors)
    actual_quantity = _decimal(raw, "actual_quantity", errors)
    fees = _decimal(raw, "fees", errors)
    slippage = _decimal(raw, "slippage", errors)

    exited_at = None
    if raw.get("exited_at") is not None:
        exited_at = parse_signal_time(raw["exited_at"])
        if exited_at is None:
            errors.append(f"Invalid exited_at '{raw['exited_at']}'")

    if errors:
        raise SignalValidationError(errors)

    assert exit_price is not None and profit_loss is not None and exited_at is not None
    venue_order_id = raw.get("platform_order_id") or raw.get("venue_order_id")
    return TradeOutcome(
        trade_id=str(raw["trade_id"]).strip(),
        session_id=str(raw["session_id"]).strip(),
        result=Outcome(result),
        exit_price=exit_price,
        profit_loss=profit_loss,
        exit_reason=ExitReason(reason),
        exited_at=exited_at,
        venue_order_id=str(venue_order_id) if venue_order_id else None,
        actual_quantity=actual_quantity,
        fees=fees,
        slippage=slippage,
    )
