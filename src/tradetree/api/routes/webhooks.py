"""Inbound webhooks: trade signals and trade outcome callbacks."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tradetree.api.routes.serialize import read_json, to_jsonable
from tradetree.logging import get_logger
from tradetree.workflow import TradingWorkflow

logger = get_logger(__name__)

router = APIRouter()


def _invalid_body() -> JSONResponse:
    return JSONResponse(
        content={"success": False, "error": "Request body must be a JSON object"},
        status_code=400,
    )


@router.post("/trade-signal")
async def receive_trade_signal(request: Request) -> JSONResponse:
    """Accept a trade signal, size it, and execute it on the active session."""
    workflow: TradingWorkflow = request.app.state.workflow
    raw = await read_json(request)
    if raw is None:
        return _invalid_body()

    result = await workflow.handle_signal(raw)
    content = {
        "success": result.success,
        "session_id": result.session_id,
        "trade_id": result.trade_id,
        "node_id": result.node_id,
        "stake": str(result.stake),
        "warnings": result.warnings,
        "cached": result.cached,
    }
    if result.calculation is not None:
        content["expected_net_profit"] = str(result.calculation.net_profit)
        content["total_cost"] = str(result.calculation.total_cost)
        content["iterations"] = result.calculation.iterations
    if result.execution is not None:
        content["execution"] = to_jsonable(result.execution)
    if result.partial_fill is not None:
        content["partial_fill"] = to_jsonable(result.partial_fill)
    if result.error:
        content["error"] = result.error
    return JSONResponse(content=content, status_code=200 if result.success else 502)


@router.get("/trade-signal")
async def trade_signal_health(request: Request) -> JSONResponse:
    """Liveness check for the signal webhook."""
    alerts = request.app.state.alerts
    return JSONResponse(
        content={
            "status": "ok",
            "venue_status": alerts.venue_status if alerts is not None else None,
        }
    )


@router.post("/trade-result")
async def receive_trade_result(request: Request) -> JSONResponse:
    """Apply a win/loss callback to its session."""
    workflow: TradingWorkflow = request.app.state.workflow
    raw = await read_json(request)
    if raw is None:
        return _invalid_body()

    result = await workflow.handle_outcome(raw)
    return JSONResponse(content={"success": True, **to_jsonable(result)})
