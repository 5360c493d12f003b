"""Tests for session state transitions.

Verifies:
- Win/loss steps follow exactly one edge and update the running total
- Terminal sessions reject further outcomes
- Node-jump detection rolls back to the last known good node and blocks
- Rollback, confirm, annotate and rename bookkeeping
"""

from decimal import Decimal

import pytest

from tradetree.exceptions import (
    ManualConfirmationRequired,
    NodeJumpError,
    SessionCompletedError,
)
from tradetree.models import Outcome, StepAction
from tradetree.tree import session_machine as sm
from tradetree.tree.graph import LOST_NODE, START_NODE, WIN_NODE


@pytest.fixture
def session():
    return sm.new_session("BTCUSDT", Decimal("100000"), session_id="sess_test")


class TestNewSession:
    def test_starts_on_start_node(self, session) -> None:
        assert session.current_node_id == START_NODE
        assert session.running_total == Decimal("0")
        assert session.path_history == []
        assert not session.completed

    def test_generates_id(self) -> None:
        created = sm.new_session("ETHUSDT", Decimal("1000"))
        assert created.session_id.startswith("sess_")
        assert created.name == "ETHUSDT session"


class TestApplyOutcome:
    def test_win_follows_win_edge(self, session) -> None:
        target = sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))

        assert target == "1-0"
        assert session.current_node_id == "1-0"
        assert session.running_total == Decimal("650")
        step = session.last_step
        assert step.action == StepAction.WIN
        assert step.from_node_id == START_NODE
        assert step.node_id == "1-0"

    def test_running_total_is_sum_of_signed_results(self, session) -> None:
        sm.apply_outcome(session, Outcome.LOSS, Decimal("-500"), Decimal("25000"))
        sm.apply_outcome(session, Outcome.WIN, Decimal("730"), Decimal("30000"))
        sm.apply_outcome(session, Outcome.LOSS, Decimal("-700.50"), Decimal("31000"))

        assert session.current_node_id == "1-2"
        assert session.running_total == Decimal("-470.50")
        assert sm.verify_invariants(session) == []

    def test_five_wins_complete_the_session(self, session) -> None:
        for _ in range(5):
            sm.apply_outcome(session, Outcome.WIN, Decimal("100"), Decimal("1000"))

        assert session.current_node_id == WIN_NODE
        assert session.completed

    def test_terminal_session_rejects_outcome(self, session) -> None:
        session.current_node_id = LOST_NODE
        session.completed = True

        with pytest.raises(SessionCompletedError):
            sm.apply_outcome(session, Outcome.WIN, Decimal("1"), Decimal("1"))
        assert session.path_history == []
        assert session.running_total == Decimal("0")

    def test_execute_step_does_not_break_edge_check(self, session) -> None:
        sm.record_execution(session, Decimal("29878"), "trade_a", succeeded=True)
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"), trade_id="trade_a")

        assert session.current_node_id == "1-0"
        assert [s.action for s in session.path_history] == [StepAction.EXECUTE, StepAction.WIN]


class TestNodeJump:
    def test_out_of_band_move_is_rolled_back_and_blocked(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        # Simulates an external write that skipped a level
        session.current_node_id = "2-0"

        with pytest.raises(NodeJumpError):
            sm.apply_outcome(session, Outcome.WIN, Decimal("440"), Decimal("20000"))

        assert session.current_node_id == "1-0"
        assert session.requires_manual_confirmation
        step = session.last_step
        assert step.action == StepAction.ROLLBACK
        assert step.note.startswith("Rollback executed:")
        assert session.running_total == Decimal("650")

    def test_blocked_session_rejects_outcome(self, session) -> None:
        session.requires_manual_confirmation = True
        session.blocked_reason = "test"

        with pytest.raises(ManualConfirmationRequired):
            sm.apply_outcome(session, Outcome.WIN, Decimal("1"), Decimal("1"))

    def test_confirm_clears_block(self, session) -> None:
        session.requires_manual_confirmation = True
        session.blocked_reason = "jump"

        sm.confirm(session, "alice")

        assert not session.requires_manual_confirmation
        assert session.blocked_reason == ""
        assert "alice" in session.notes[-1]

    def test_validate_node_jump_checks_outcome(self) -> None:
        sm.validate_node_jump(START_NODE, "1-0", Outcome.WIN)
        with pytest.raises(NodeJumpError):
            sm.validate_node_jump(START_NODE, "1-0", Outcome.LOSS)
        with pytest.raises(NodeJumpError):
            sm.validate_node_jump(START_NODE, "1-1")

    def test_intake_check_rolls_back_out_of_band_move(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        session.current_node_id = "3-0"

        with pytest.raises(NodeJumpError):
            sm.ensure_consistent_position(session)

        assert session.current_node_id == "1-0"
        assert session.requires_manual_confirmation
        assert session.last_step.action == StepAction.ROLLBACK
        assert session.last_step.from_node_id == "3-0"
        assert sm.verify_invariants(session) == []

    def test_intake_check_passes_consistent_session(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        steps = len(session.path_history)

        sm.ensure_consistent_position(session)

        assert session.current_node_id == "1-0"
        assert len(session.path_history) == steps
        assert not session.requires_manual_confirmation


class TestRollbackAndAdmin:
    def test_rollback_keeps_realized_pnl(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        sm.rollback(session, START_NODE, "overnight", signed_result=Decimal("-12.5"))

        assert session.current_node_id == START_NODE
        assert session.running_total == Decimal("637.5")
        assert not session.requires_manual_confirmation
        assert sm.verify_invariants(session) == []

    def test_failed_execution_does_not_move(self, session) -> None:
        sm.record_execution(session, Decimal("100"), "trade_x", succeeded=False, note="timeout")

        assert session.current_node_id == START_NODE
        assert session.last_step.status == "failed"
        assert session.running_total == Decimal("0")

    def test_rename_and_annotate_leave_position(self, session) -> None:
        sm.rename(session, "Morning BTC")
        sm.annotate(session, "checked")

        assert session.name == "Morning BTC"
        assert session.notes == ["checked"]
        assert session.current_node_id == START_NODE
        assert session.path_history == []

    def test_verify_invariants_detects_drift(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        session.running_total = Decimal("1")

        assert sm.verify_invariants(session)

    def test_verify_invariants_detects_off_path_move(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        session.current_node_id = "3-0"
        sm.record_execution(session, Decimal("500"), "trade_x", succeeded=True)

        problems = sm.verify_invariants(session)

        assert problems == ["step 2 starts at 3-0, previous step ended at 1-0"]

    def test_verify_invariants_flags_unrecorded_move(self, session) -> None:
        sm.apply_outcome(session, Outcome.WIN, Decimal("650"), Decimal("29878"))
        session.current_node_id = "2-0"

        assert sm.verify_invariants(session) == [
            "current node 2-0 != last recorded node 1-0"
        ]
