"""Session inspection and administration endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tradetree.api.routes.serialize import read_json
from tradetree.tree.graph import get_node
from tradetree.workflow import TradingWorkflow

router = APIRouter()


def _session_payload(session) -> dict:
    payload = session.to_dict()
    payload["current_stake_percentage"] = str(
        get_node(session.current_node_id).stake_percentage
    )
    return payload


@router.get("")
async def list_sessions(request: Request, include_completed: bool = True) -> JSONResponse:
    workflow: TradingWorkflow = request.app.state.workflow
    sessions = await workflow.list_sessions(include_completed=include_completed)
    return JSONResponse(
        content=[
            {
                "session_id": s.session_id,
                "symbol": s.symbol,
                "name": s.name,
                "current_node_id": s.current_node_id,
                "running_total": str(s.running_total),
                "completed": s.completed,
                "requires_manual_confirmation": s.requires_manual_confirmation,
                "open_trade_id": s.open_trade.trade_id if s.open_trade else None,
                "steps": len(s.path_history),
                "updated_at": s.updated_at.isoformat(),
            }
            for s in sessions
        ]
    )


@router.get("/{session_id}")
async def get_session(request: Request, session_id: str) -> JSONResponse:
    workflow: TradingWorkflow = request.app.state.workflow
    session = await workflow.get_session(session_id)
    return JSONResponse(content=_session_payload(session))


@router.patch("/{session_id}")
async def rename_session(request: Request, session_id: str) -> JSONResponse:
    """Rename a session. Only the display name may be changed here."""
    workflow: TradingWorkflow = request.app.state.workflow
    body = await read_json(request)
    name = str((body or {}).get("name", "")).strip()
    if not name:
        return JSONResponse(
            content={"success": False, "error": "name is required"}, status_code=400
        )
    session = await workflow.rename_session(session_id, name)
    return JSONResponse(content=_session_payload(session))


@router.delete("/{session_id}")
async def delete_session(request: Request, session_id: str) -> JSONResponse:
    workflow: TradingWorkflow = request.app.state.workflow
    if not await workflow.delete_session(session_id):
        return JSONResponse(
            content={"success": False, "error": f"Session {session_id} not found"},
            status_code=404,
        )
    return JSONResponse(content={"success": True, "session_id": session_id})


@router.post("/{session_id}/confirm")
async def confirm_session(request: Request, session_id: str) -> JSONResponse:
    """Clear a manual-confirmation block after operator review."""
    workflow: TradingWorkflow = request.app.state.workflow
    body = await read_json(request) or {}
    session = await workflow.confirm_session(
        session_id, confirmed_by=str(body.get("confirmed_by") or "operator")
    )
    return JSONResponse(content=_session_payload(session))


@router.post("/{session_id}/notes")
async def add_note(request: Request, session_id: str) -> JSONResponse:
    workflow: TradingWorkflow = request.app.state.workflow
    body = await read_json(request)
    note = str((body or {}).get("note", "")).strip()
    if not note:
        return JSONResponse(
            content={"success": False, "error": "note is required"}, status_code=400
        )
    session = await workflow.annotate_session(session_id, note)
    return JSONResponse(content=_session_payload(session))
