"""Tests for the HTTP surface: routing, payloads and error-to-status mapping."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from tradetree.alerting.alerts import AlertService
from tradetree.api.app import create_app, status_code_for
from tradetree.config import AlertSettings
from tradetree.exceptions import (
    DuplicateSignalError,
    ExecutionError,
    ManualConfirmationRequired,
    SessionBusyError,
    SessionNotFoundError,
    SignalValidationError,
    StoreUnavailableError,
    TradeNotOpenError,
    TradeTreeError,
)
from tradetree.tree import session_machine as sm
from tradetree.workflow import OutcomeResult, SignalResult


@pytest.fixture
def workflow() -> MagicMock:
    return MagicMock()


@pytest.fixture
def alerts() -> AlertService:
    return AlertService(AlertSettings())


@pytest.fixture
def client(workflow, alerts) -> TestClient:
    app = create_app()
    app.state.workflow = workflow
    app.state.alerts = alerts
    app.state.guardian = MagicMock()
    app.state.guardian.active_registrations.return_value = []
    app.state.cache = MagicMock()
    app.state.cache.__len__.return_value = 0
    return TestClient(app)


def _signal_result(success: bool = True) -> SignalResult:
    return SignalResult(
        success=success,
        session_id="sess_1",
        node_id="Start",
        trade_id="trade_1",
        stake=Decimal("29878.41"),
        calculation=None,
        execution=None,
        error=None if success else "order rejected",
    )


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (DuplicateSignalError("tv-1"), 409),
        (SignalValidationError(["bad"]), 400),
        (SessionNotFoundError("gone"), 404),
        (SessionBusyError("busy"), 409),
        (TradeNotOpenError("stale"), 409),
        (ManualConfirmationRequired("blocked"), 409),
        (StoreUnavailableError("locked"), 503),
        (ExecutionError("rejected"), 502),
        (TradeTreeError("other"), 500),
    ],
)
def test_status_mapping(exc, code) -> None:
    assert status_code_for(exc) == code


class TestWebhooks:
    def test_signal_accepted(self, client, workflow) -> None:
        workflow.handle_signal = AsyncMock(return_value=_signal_result())

        response = client.post("/api/webhook/trade-signal", json={"id": "tv-1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["stake"] == "29878.41"
        workflow.handle_signal.assert_awaited_once_with({"id": "tv-1"})

    def test_failed_execution_is_502(self, client, workflow) -> None:
        workflow.handle_signal = AsyncMock(return_value=_signal_result(success=False))

        response = client.post("/api/webhook/trade-signal", json={"id": "tv-1"})

        assert response.status_code == 502
        assert response.json()["error"] == "order rejected"

    def test_validation_errors_listed(self, client, workflow) -> None:
        workflow.handle_signal = AsyncMock(
            side_effect=SignalValidationError(["Missing required field: entry"], ["old"])
        )

        response = client.post("/api/webhook/trade-signal", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["errors"] == ["Missing required field: entry"]
        assert body["warnings"] == ["old"]
        assert body["error_type"] == "SignalValidationError"

    def test_duplicate_is_conflict(self, client, workflow) -> None:
        workflow.handle_signal = AsyncMock(side_effect=DuplicateSignalError("tv-1"))

        response = client.post("/api/webhook/trade-signal", json={"id": "tv-1"})

        assert response.status_code == 409

    def test_non_object_body_rejected(self, client, workflow) -> None:
        workflow.handle_signal = AsyncMock()

        response = client.post("/api/webhook/trade-signal", json=[1, 2])

        assert response.status_code == 400
        workflow.handle_signal.assert_not_awaited()

    def test_webhook_health(self, client) -> None:
        response = client.get("/api/webhook/trade-signal")

        assert response.json() == {"status": "ok", "venue_status": "HEALTHY"}

    def test_outcome_applied(self, client, workflow) -> None:
        workflow.handle_outcome = AsyncMock(
            return_value=OutcomeResult(
                session_id="sess_1",
                trade_id="trade_1",
                previous_node_id="Start",
                current_node_id="1-0",
                running_total=Decimal("650"),
                completed=False,
                requires_manual_confirmation=False,
                message="Moved from Start to 1-0",
            )
        )

        response = client.post("/api/webhook/trade-result", json={"trade_id": "trade_1"})

        assert response.status_code == 200
        assert response.json()["current_node_id"] == "1-0"
        assert response.json()["running_total"] == "650"

    def test_stale_outcome_is_conflict(self, client, workflow) -> None:
        workflow.handle_outcome = AsyncMock(side_effect=TradeNotOpenError("not open"))

        response = client.post("/api/webhook/trade-result", json={"trade_id": "trade_1"})

        assert response.status_code == 409


class TestSessions:
    def test_get_session(self, client, workflow) -> None:
        session = sm.new_session("BTCUSDT", Decimal("100000"), session_id="sess_1")
        workflow.get_session = AsyncMock(return_value=session)

        response = client.get("/api/sessions/sess_1")

        assert response.status_code == 200
        assert response.json()["current_node_id"] == "Start"
        assert response.json()["current_stake_percentage"] == "0.65"

    def test_unknown_session_is_404(self, client, workflow) -> None:
        workflow.get_session = AsyncMock(side_effect=SessionNotFoundError("gone"))

        assert client.get("/api/sessions/sess_x").status_code == 404

    def test_rename_requires_name(self, client, workflow) -> None:
        workflow.rename_session = AsyncMock()

        response = client.patch("/api/sessions/sess_1", json={"current_node_id": "4-0"})

        assert response.status_code == 400
        workflow.rename_session.assert_not_awaited()

    def test_delete_missing_is_404(self, client, workflow) -> None:
        workflow.delete_session = AsyncMock(return_value=False)

        assert client.delete("/api/sessions/sess_x").status_code == 404


class TestSystem:
    def test_dashboard_status(self, client) -> None:
        response = client.get("/api/dashboard/status")

        body = response.json()
        assert body["status"] == "HEALTHY"
        assert body["cache_size"] == 0
        assert body["active_overnight_trades"] == 0

    def test_acknowledge_alert(self, client, alerts) -> None:
        alert = alerts.report_system_error("boom")

        response = client.post(f"/api/dashboard/alerts/{alert.alert_id}/acknowledge", json={})

        assert response.status_code == 200
        assert alert.acknowledged
        assert client.post("/api/dashboard/alerts/alert_x/acknowledge").status_code == 404
