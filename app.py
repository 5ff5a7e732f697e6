"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository and services, registers routers, and runs startup
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

from roombook.controllers.availability_controller import router as availability_router
from roombook.controllers.booking_controller import router as booking_router
from roombook.repository.data_repository import DataRepository
from roombook.services.availability_service import AvailabilitySearchService
from roombook.services.booking_service import BookingService
from roombook.services.conflict_service import ConflictEvaluator
from roombook.services.recommendation_service import (
    CandidateRankingService,
    RecommendationFunnel,
)
from roombook.services.time_window_service import TimeWindowNormalizer
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    One normalizer and one evaluator are shared, so every service reads wall
    clocks in the same civil timezone.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Core (pure, shared) ---
    normalizer = TimeWindowNormalizer(settings=settings)
    evaluator = ConflictEvaluator(normalizer)

    # --- Services ---
    search_service = AvailabilitySearchService(
        room_repository=repository,
        profile_provider=repository,
        evaluator=evaluator,
        settings=settings,
    )
    ranking_service = CandidateRankingService(
        stats_repository=repository,
        recent_usage=repository,
        funnel=RecommendationFunnel(settings=settings),
        settings=settings,
    )
    booking_service = BookingService(
        repository=repository,
        evaluator=evaluator,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(availability_router)
    app.include_router(booking_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "civil_timezone": normalizer.zone_name}

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.search_service = search_service
    app.state.ranking_service = ranking_service
    app.state.booking_service = booking_service

    return app


def _startup(app: FastAPI) -> None:
    """Idempotent startup sequence. Safe to re-run on server restarts."""
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup complete | system ready")


# Module-level app object for uvicorn
app = create_app()
