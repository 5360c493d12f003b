"""Entry point for the decision tree trading engine.

Wires all components together and serves the webhook API. The engine and
the HTTP server share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown: background loops stop, a
forced overnight closure already under way completes, cached snapshots
get a last chance to reach the store.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. Database + SessionStore (durable state)
4. PriceBook (shared price cache)
5. Venue (PaperVenue or CcxtVenue based on mode)
6. AlertService (health monitoring)
7. ExecutionCoordinator (orders with retry, balance cache)
8. CostModel + StakeSolver (cost-aware sizing)
9. SignalNormalizer (intake validation)
10. MutationCache + Reconciler (store failure fallback)
11. OvernightGuardian (forced closure before cutoff)
12. TradingWorkflow (signal and outcome handling)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from tradetree.alerting.alerts import AlertService
from tradetree.alerting.sinks import LogNotificationSink
from tradetree.config import AppSettings
from tradetree.costs.cost_model import CostModel
from tradetree.costs.profiles import get_profile
from tradetree.costs.stake_solver import StakeSolver
from tradetree.execution.coordinator import ExecutionCoordinator
from tradetree.execution.price_book import PriceBook
from tradetree.execution.retry import RetryPolicy
from tradetree.locks import KeyedLocks
from tradetree.logging import get_logger, setup_logging
from tradetree.overnight.guardian import OvernightGuardian
from tradetree.persistence.database import Database
from tradetree.persistence.store import SessionStore
from tradetree.resilience.cache import MutationCache
from tradetree.resilience.reconciler import Reconciler
from tradetree.signals.normalizer import SignalNormalizer
from tradetree.workflow import TradingWorkflow


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all engine components from settings.

    Note: Does NOT connect the database or the venue -- that happens in
    ``start_components``.

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("tradetree.main")

    # 3. Durable state
    database = Database(settings.database.path)
    store = SessionStore(database)

    # 4. Shared price cache
    price_book = PriceBook()

    # 5. Venue based on mode
    if settings.venue.mode == "paper":
        from tradetree.execution.paper_venue import PaperVenue

        venue = PaperVenue(price_book, settings.venue.paper_balance)
    else:
        from tradetree.execution.ccxt_venue import CcxtVenue

        if not settings.venue.api_key.get_secret_value():
            logger.warning(
                "no_api_keys_configured",
                mode=settings.venue.mode,
                note="Orders and balance requests will fail.",
            )
        venue = CcxtVenue(settings.venue, price_book)

    # 6. Health monitoring
    alerts = AlertService(settings.alerts, sinks=[LogNotificationSink()], store=store)

    # 7. Execution
    coordinator = ExecutionCoordinator(
        venue,
        settings.execution,
        default_balance=settings.venue.paper_balance,
        alert_service=alerts,
    )

    # 8. Cost-aware sizing
    cost_model = CostModel(get_profile(settings.venue.cost_profile))
    solver = StakeSolver(cost_model, settings.staking)

    # 9. Intake
    normalizer = SignalNormalizer(settings.signal)

    # 10. Failure cache and reconciliation share the per-session locks
    session_locks = KeyedLocks()
    cache = MutationCache(settings.resilience)
    reconciler = Reconciler(cache, store, settings.resilience, session_locks)

    # 11. Overnight guardian
    guardian = OvernightGuardian(
        settings.overnight,
        venue,
        store,
        retry_policy=coordinator.policy,
        alert_service=alerts,
    )

    # 12. Workflow (registers itself as the guardian's rollback handler)
    workflow = TradingWorkflow(
        settings=settings,
        store=store,
        cache=cache,
        normalizer=normalizer,
        solver=solver,
        coordinator=coordinator,
        guardian=guardian,
        alerts=alerts,
        price_book=price_book,
        session_locks=session_locks,
    )

    return {
        "database": database,
        "store": store,
        "price_book": price_book,
        "venue": venue,
        "alerts": alerts,
        "coordinator": coordinator,
        "solver": solver,
        "normalizer": normalizer,
        "cache": cache,
        "reconciler": reconciler,
        "guardian": guardian,
        "workflow": workflow,
    }


async def start_components(settings: AppSettings, components: dict[str, Any]) -> None:
    """Connect resources, restore state, and start background loops."""
    logger = get_logger("tradetree.main")

    await components["database"].connect()
    await components["venue"].connect()

    restored = components["cache"].load()
    registrations = await components["guardian"].load()
    logger.info(
        "state_restored",
        cached_sessions=restored,
        overnight_registrations=registrations,
    )

    await components["reconciler"].start()
    if settings.overnight.enabled:
        await components["guardian"].start()


async def stop_components(components: dict[str, Any]) -> None:
    """Stop loops, flush the failure cache, and release resources."""
    logger = get_logger("tradetree.main")

    await components["guardian"].stop()
    await components["reconciler"].stop()

    # Last attempt to land cached snapshots before the store closes
    try:
        await components["reconciler"].sync()
    except Exception:
        logger.warning("final_reconcile_failed", exc_info=True)

    await components["alerts"].drain()
    await components["venue"].close()
    await components["database"].close()
    logger.info("tradetree_stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage engine component lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects resources and
    starts the guardian and reconciler loops.

    On shutdown: stops loops, flushes the cache, closes resources.
    """
    logger = get_logger("tradetree.main")
    settings = app.state.settings
    components = app.state.components

    # Store components on app.state for route handler access
    app.state.workflow = components["workflow"]
    app.state.guardian = components["guardian"]
    app.state.alerts = components["alerts"]
    app.state.cache = components["cache"]
    app.state.reconciler = components["reconciler"]
    app.state.coordinator = components["coordinator"]

    await start_components(settings, components)
    logger.info("lifespan_started", mode=settings.venue.mode)

    yield

    await stop_components(components)


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("tradetree.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run() -> None:
    """Run the trading engine.

    When the server is enabled (SERVER_ENABLED=true, the default) the API
    and background loops run together under uvicorn, which installs its
    own signal handling. Otherwise only the guardian and reconciler loops
    run until SIGINT/SIGTERM.
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level)
    logger = get_logger("tradetree.main")

    # 3-12. Build all components
    components = _build_components(settings)

    if settings.server.enabled:
        from tradetree.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_server",
            host=settings.server.host,
            port=settings.server.port,
            mode=settings.venue.mode,
            cost_profile=settings.venue.cost_profile,
        )

        config = uvicorn.Config(
            app,
            host=settings.server.host,
            port=settings.server.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info(
            "starting_without_server",
            mode=settings.venue.mode,
            overnight_enabled=settings.overnight.enabled,
        )

        await start_components(settings, components)
        try:
            await stop_event.wait()
        finally:
            await stop_components(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
