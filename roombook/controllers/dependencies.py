"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from roombook.repository.data_repository import DataRepository
from roombook.services.availability_service import AvailabilitySearchService
from roombook.services.booking_service import BookingService
from roombook.services.recommendation_service import CandidateRankingService


def _require_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_repository(request: Request) -> DataRepository:
    return _require_state(request, "repository", "Repository")


def get_search_service(request: Request) -> AvailabilitySearchService:
    return _require_state(request, "search_service", "Availability search service")


def get_ranking_service(request: Request) -> CandidateRankingService:
    return _require_state(request, "ranking_service", "Ranking service")


def get_booking_service(request: Request) -> BookingService:
    return _require_state(request, "booking_service", "Booking service")
