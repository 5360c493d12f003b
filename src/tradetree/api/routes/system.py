"""System endpoints: failure cache, health dashboard and alerts."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tradetree.api.routes.serialize import read_json, to_jsonable

router = APIRouter()


@router.get("/system/cache")
async def cache_status(request: Request) -> JSONResponse:
    cache = request.app.state.cache
    return JSONResponse(content=cache.status())


@router.post("/system/cache/sync")
async def sync_cache(request: Request) -> JSONResponse:
    """Push cached snapshots to the store now instead of waiting for the loop."""
    reconciler = request.app.state.reconciler
    report = await reconciler.sync()
    return JSONResponse(
        content={
            "success": not report.failed,
            **report.as_dict(),
            "remaining": len(request.app.state.cache),
        }
    )


@router.get("/dashboard/status")
async def dashboard_status(request: Request) -> JSONResponse:
    alerts = request.app.state.alerts
    guardian = request.app.state.guardian
    cache = request.app.state.cache
    health = alerts.health()
    health["cache_size"] = len(cache)
    health["active_overnight_trades"] = len(guardian.active_registrations())
    health["stake_deviation_trend"] = alerts.deviation_trend()
    return JSONResponse(content=to_jsonable(health))


@router.get("/dashboard/alerts")
async def list_alerts(
    request: Request, include_acknowledged: bool = True, limit: int = 50
) -> JSONResponse:
    alerts = request.app.state.alerts
    return JSONResponse(
        content=to_jsonable(
            alerts.get_alerts(include_acknowledged=include_acknowledged, limit=limit)
        )
    )


@router.post("/dashboard/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(request: Request, alert_id: str) -> JSONResponse:
    alerts = request.app.state.alerts
    body = await read_json(request) or {}
    if not alerts.acknowledge(alert_id, str(body.get("acknowledged_by") or "operator")):
        return JSONResponse(
            content={"success": False, "error": f"Alert {alert_id} not found"},
            status_code=404,
        )
    return JSONResponse(content={"success": True, "alert_id": alert_id})
