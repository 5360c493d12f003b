"""FastAPI application factory and error mapping for the HTTP surface."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tradetree.api.routes import sessions, system, trading, webhooks
from tradetree.exceptions import (
    DomainInvariantError,
    DuplicateSignalError,
    ExecutionError,
    SessionBusyError,
    SessionNotFoundError,
    SignalValidationError,
    TradeNotOpenError,
    TradeTreeError,
    TransientInfraError,
)
from tradetree.logging import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins
_STATUS_CODES: tuple[tuple[type[TradeTreeError], int], ...] = (
    (DuplicateSignalError, 409),
    (SignalValidationError, 400),
    (SessionNotFoundError, 404),
    (SessionBusyError, 409),
    (TradeNotOpenError, 409),
    (DomainInvariantError, 409),
    (TransientInfraError, 503),
    (ExecutionError, 502),
)


def status_code_for(exc: TradeTreeError) -> int:
    """HTTP status for an engine exception. Unmapped families are 500."""
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


async def _handle_engine_error(request: Request, exc: TradeTreeError) -> JSONResponse:
    code = status_code_for(exc)
    content: dict[str, Any] = {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, SignalValidationError):
        content["errors"] = exc.errors
        content["warnings"] = exc.warnings
    log = logger.error if code >= 500 else logger.info
    log("request_rejected", path=request.url.path, status=code, error=str(exc))
    return JSONResponse(content=content, status_code=code)


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to build components and attach them to app.state.

    Returns:
        Configured FastAPI application with all routers registered.
    """
    app = FastAPI(title="Decision Tree Trading Engine", lifespan=lifespan)

    # Wired by main.py lifespan
    app.state.workflow = None
    app.state.guardian = None
    app.state.alerts = None
    app.state.cache = None
    app.state.reconciler = None
    app.state.coordinator = None
    app.state.settings = None

    app.add_exception_handler(TradeTreeError, _handle_engine_error)

    app.include_router(webhooks.router, prefix="/api/webhook")
    app.include_router(sessions.router, prefix="/api/sessions")
    app.include_router(trading.router, prefix="/api/trading")
    app.include_router(system.router, prefix="/api")

    return app
