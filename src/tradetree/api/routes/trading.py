"""Trading endpoints: balance, cost quotes and overnight guardian control."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tradetree.api.routes.serialize import read_json, to_jsonable
from tradetree.logging import get_logger
from tradetree.models import Action
from tradetree.overnight.guardian import OvernightGuardian
from tradetree.tree.graph import START_NODE
from tradetree.workflow import TradingWorkflow

logger = get_logger(__name__)

router = APIRouter()


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(content={"success": False, "error": message}, status_code=400)


@router.get("/balance")
async def get_balance(request: Request, refresh: bool = False) -> JSONResponse:
    coordinator = request.app.state.coordinator
    balance = await coordinator.get_balance(force_refresh=refresh)
    return JSONResponse(content={"balance": str(balance)})


@router.post("/costs")
async def quote_costs(request: Request) -> JSONResponse:
    """Preview stake and cost breakdown for a hypothetical trade."""
    workflow: TradingWorkflow = request.app.state.workflow
    body = await read_json(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")

    try:
        entry = Decimal(str(body["entry"]))
        target = Decimal(str(body["target"]))
        stop = Decimal(str(body["stop"]))
        capital = Decimal(str(body["capital"])) if body.get("capital") is not None else None
        action = Action(str(body.get("action", "buy")).lower())
        holding_days = int(body["holding_days"]) if body.get("holding_days") else None
    except KeyError as e:
        return _bad_request(f"Missing field: {e.args[0]}")
    except (InvalidOperation, ValueError) as e:
        return _bad_request(f"Invalid value: {e}")

    calc = await workflow.quote(
        entry,
        target,
        stop,
        action=action,
        node_id=str(body.get("node_id") or START_NODE),
        capital=capital,
        holding_days=holding_days,
    )
    content = to_jsonable(calc)
    content["breakdown"] = to_jsonable(calc.breakdown.as_dict())
    content["is_valid"] = calc.is_valid
    return JSONResponse(content=content)


@router.get("/overnight")
async def list_overnight(request: Request, active_only: bool = False) -> JSONResponse:
    guardian: OvernightGuardian = request.app.state.guardian
    regs = guardian.active_registrations() if active_only else guardian.all_registrations()
    now = guardian.now()
    return JSONResponse(
        content={
            "next_cutoff": guardian.next_cutoff(now).isoformat(),
            "in_grace_window": guardian.in_grace_window(now),
            "registrations": to_jsonable(regs),
        }
    )


@router.post("/overnight")
async def overnight_action(request: Request) -> JSONResponse:
    """Operator actions on a watched trade: ``close`` or ``update_settings``."""
    guardian: OvernightGuardian = request.app.state.guardian
    body = await read_json(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")

    action = body.get("action")
    trade_id = str(body.get("trade_id") or "")
    if not trade_id:
        return _bad_request("trade_id is required")

    if action == "close":
        closed = await guardian.manual_close(trade_id)
        if not closed:
            return JSONResponse(
                content={"success": False, "error": f"No active registration {trade_id}"},
                status_code=404,
            )
        logger.info("overnight_manual_close_requested", trade_id=trade_id)
        return JSONResponse(content={"success": True, "trade_id": trade_id})

    if action == "update_settings":
        enabled = body.get("overnight_close_enabled")
        if not isinstance(enabled, bool):
            return _bad_request("overnight_close_enabled must be a boolean")
        reg = await guardian.update_settings(trade_id, enabled)
        if reg is None:
            return JSONResponse(
                content={"success": False, "error": f"No active registration {trade_id}"},
                status_code=404,
            )
        return JSONResponse(content={"success": True, "registration": to_jsonable(reg)})

    return _bad_request(f"Unknown action: {action}")


@router.post("/overnight/scan")
async def run_overnight_scan(request: Request) -> JSONResponse:
    guardian: OvernightGuardian = request.app.state.guardian
    report = await guardian.scan()
    return JSONResponse(content=to_jsonable(report))
