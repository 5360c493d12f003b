"""Tests for outcome callback parsing."""

from decimal import Decimal

import pytest

from tradetree.exceptions import SignalValidationError
from tradetree.models import ExitReason, Outcome
from tradetree.signals.outcomes import parse_outcome


@pytest.fixture
def raw_outcome() -> dict:
    return {
        "trade_id": "trade_abc",
        "session_id": "sess_1",
        "result": "WIN",
        "exit_price": "46000",
        "profit_loss": "650.12",
        "exit_reason": "target_reached",
        "exited_at": "2024-01-10T14:00:00Z",
    }


def test_valid_outcome(raw_outcome) -> None:
    outcome = parse_outcome(raw_outcome)

    assert outcome.result == Outcome.WIN
    assert outcome.profit_loss == Decimal("650.12")
    assert outcome.exit_reason == ExitReason.TARGET_REACHED
    assert outcome.actual_quantity is None


def test_optional_fill_details(raw_outcome) -> None:
    raw_outcome.update(platform_order_id=123, actual_quantity="0.5", fees="1.2")
    outcome = parse_outcome(raw_outcome)

    assert outcome.venue_order_id == "123"
    assert outcome.actual_quantity == Decimal("0.5")
    assert outcome.fees == Decimal("1.2")


def test_all_problems_reported(raw_outcome) -> None:
    raw_outcome.update(result="draw", exit_price="-1", exit_reason="timeout")
    del raw_outcome["session_id"]

    with pytest.raises(SignalValidationError) as exc_info:
        parse_outcome(raw_outcome)
    errors = exc_info.value.errors
    assert "Missing required field: session_id" in errors
    assert any("Invalid result" in e for e in errors)
    assert any("Invalid exit_reason" in e for e in errors)
    assert "Field 'exit_price' must be positive" in errors


def test_non_numeric_profit(raw_outcome) -> None:
    raw_outcome["profit_loss"] = "lots"

    with pytest.raises(SignalValidationError):
        parse_outcome(raw_outcome)
