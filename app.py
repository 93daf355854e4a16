"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the allocation services, registers routers, and runs startup
initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from plazas.controllers.allocation_controller import router as allocation_router
from plazas.controllers.facility_controller import router as facility_router
from plazas.repository.data_repository import DataRepository
from plazas.services.allocation_service import AllocationEngine
from plazas.services.coordinator_service import ConsistencyCoordinator
from plazas.services.dedup_service import DeduplicationGuard
from plazas.services.history_service import HistoryRecorder
from plazas.services.ledger_service import CapacityLedger
from plazas.services.scheduler_service import BackgroundProcessor
from plazas.utils.config import Settings, get_settings
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is created here and exposed through app.state, so each
    dependency is traceable from this function.
    """
    settings = settings or get_settings()

    repository = DataRepository(settings)
    coordinator = ConsistencyCoordinator(
        repository=repository,
        ledger=CapacityLedger(),
        settings=settings,
    )
    allocation_engine = AllocationEngine(
        repository=repository,
        settings=settings,
        coordinator=coordinator,
        guard=DeduplicationGuard(repository),
        history=HistoryRecorder(repository),
    )
    background_processor = (
        BackgroundProcessor(allocation_engine, settings.background_interval_seconds)
        if settings.background_interval_seconds > 0
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize storage before accepting requests; stop the timer on shutdown."""
        _startup(app, settings)
        try:
            yield
        finally:
            if app.state.background_processor is not None:
                app.state.background_processor.stop(timeout=5.0)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(facility_router)
    app.include_router(allocation_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.allocation_engine = allocation_engine
    app.state.background_processor = background_processor

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Demo data is seeded only when asked for and only into an empty store.
      3. Occupied counters are reconciled before the first pass runs.
      4. The periodic processor starts last.
    """
    repository: DataRepository = app.state.repository
    engine: AllocationEngine = app.state.allocation_engine

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo facilities and requests (skipped if not empty)")
        repository.seed_demo_data_if_empty()

    logger.info("Startup: reconciling occupied counters")
    engine.rebalance()

    if app.state.background_processor is not None:
        logger.info("Startup: starting background processor")
        app.state.background_processor.start()

    logger.info("Startup complete | database=%s", repository.database_path)


# Module-level app object for uvicorn
app = create_app()
