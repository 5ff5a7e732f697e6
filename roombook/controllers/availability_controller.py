"""HTTP controller layer for conflict checks, availability search and ranking."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator

from roombook.controllers.dependencies import (
    get_repository,
    get_ranking_service,
    get_search_service,
)
from roombook.domain.models import (
    Booking,
    ConflictResult,
    RequestedWindow,
    Room,
    RoomFilters,
    ScoreEntry,
)
from roombook.repository.data_repository import DataRepository
from roombook.services.availability_service import (
    AvailabilitySearchService,
    SearchValidationError,
)
from roombook.services.recommendation_service import CandidateRankingService
from roombook.services.time_window_service import WindowValidationError
from roombook.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["availability"])

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class WindowPayload(BaseModel):
    """Civil window DTO; times are interpreted in the system timezone."""

    date: date
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    recurring: bool = False
    recurrence_end: Optional[date] = None

    @model_validator(mode="after")
    def validate_recurrence_end(self) -> "WindowPayload":
        if self.recurrence_end is not None and not self.recurring:
            raise ValueError("recurrence_end is only allowed for recurring windows")
        return self

    def to_domain(self) -> RequestedWindow:
        return RequestedWindow(
            date=self.date.isoformat(),
            start_time=self.start_time,
            end_time=self.end_time,
            recurring=self.recurring,
            recurrence_end=(
                self.recurrence_end.isoformat() if self.recurrence_end is not None else None
            ),
        )


class ExistingBookingPayload(BaseModel):
    room_id: int = Field(gt=0)
    booking_id: Optional[int] = Field(default=None, gt=0)
    start: datetime
    end: datetime
    is_recurring: bool = False
    recurrence_end: Optional[datetime] = None

    @field_validator("start", "end", "recurrence_end")
    @classmethod
    def validate_timezone_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("instants must include a UTC offset")
        return value

    @model_validator(mode="after")
    def validate_interval(self) -> "ExistingBookingPayload":
        if self.start >= self.end:
            raise ValueError("start must be earlier than end")
        return self

    def to_domain(self) -> Booking:
        return Booking(
            room_id=self.room_id,
            booking_id=self.booking_id,
            start=self.start,
            end=self.end,
            is_recurring=self.is_recurring,
            recurrence_end=self.recurrence_end,
        )


class ConflictResponse(BaseModel):
    conflict: bool
    message: Optional[str] = None
    booking_id: Optional[int] = None
    window_index: Optional[int] = None

    @classmethod
    def from_domain(cls, result: ConflictResult) -> "ConflictResponse":
        return cls(
            conflict=result.conflict,
            message=result.message,
            booking_id=result.booking_id,
            window_index=result.window_index,
        )


class EvaluateConflictRequest(BaseModel):
    window: WindowPayload
    existing: list[ExistingBookingPayload] = Field(default_factory=list)


class RoomResponse(BaseModel):
    room_id: int
    label: str
    room_type: str
    specialty_id: Optional[int] = None
    block: str

    @classmethod
    def from_domain(cls, room: Room) -> "RoomResponse":
        return cls(
            room_id=room.room_id,
            label=room.label,
            room_type=room.room_type,
            specialty_id=room.specialty_id,
            block=room.block,
        )


class ScoreEntryResponse(BaseModel):
    room: RoomResponse
    score: float = Field(ge=0.0)
    reasons: list[str]

    @classmethod
    def from_domain(cls, entry: ScoreEntry) -> "ScoreEntryResponse":
        return cls(
            room=RoomResponse.from_domain(entry.room),
            score=entry.score,
            reasons=list(entry.reasons),
        )


class SearchAvailabilityRequest(BaseModel):
    windows: list[WindowPayload] = Field(min_length=1)
    query: Optional[str] = None
    block: Optional[str] = None
    room_type: Optional[str] = None
    specialty_id: Optional[int] = None
    requester_id: Optional[int] = Field(default=None, gt=0)
    cursor: Optional[int] = Field(default=None, ge=0)
    page_size: Optional[int] = Field(default=None, gt=0)
    rank: bool = False


class SearchAvailabilityResponse(BaseModel):
    rooms: list[RoomResponse]
    next_cursor: Optional[int] = None
    has_more: bool
    precondition_failure: Optional[str] = None
    ranking: Optional[list[ScoreEntryResponse]] = None


class RankCandidatesRequest(BaseModel):
    requester_id: int = Field(gt=0)
    room_ids: list[int] = Field(min_length=1)


class RankCandidatesResponse(BaseModel):
    ranking: list[ScoreEntryResponse]


def _window_error(exc: WindowValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(exc), "window_index": exc.window_index},
    )


@router.post(
    "/conflicts/evaluate",
    response_model=ConflictResponse,
    status_code=status.HTTP_200_OK,
)
async def evaluate_conflict(
    payload: EvaluateConflictRequest,
    service: AvailabilitySearchService = Depends(get_search_service),
) -> ConflictResponse:
    """Check one requested window against caller-supplied bookings."""
    evaluator = service.evaluator
    try:
        window = evaluator.normalizer.normalize_window(payload.window.to_domain(), 0)
    except WindowValidationError as exc:
        raise _window_error(exc) from exc
    result = evaluator.find_conflict(
        [window],
        [item.to_domain() for item in payload.existing],
    )
    return ConflictResponse.from_domain(result)


@router.post(
    "/availability/search",
    response_model=SearchAvailabilityResponse,
    status_code=status.HTTP_200_OK,
)
async def search_availability(
    payload: SearchAvailabilityRequest,
    service: AvailabilitySearchService = Depends(get_search_service),
    ranking_service: CandidateRankingService = Depends(get_ranking_service),
    repository: DataRepository = Depends(get_repository),
) -> SearchAvailabilityResponse:
    """Return one page of conflict-free rooms, optionally ranked."""
    filters = RoomFilters(
        query=payload.query,
        block=payload.block,
        room_type=payload.room_type,
        specialty_id=payload.specialty_id,
        requester_id=payload.requester_id,
    )
    try:
        page = service.search(
            filters,
            [window.to_domain() for window in payload.windows],
            cursor=payload.cursor,
            page_size=payload.page_size,
        )
    except WindowValidationError as exc:
        raise _window_error(exc) from exc
    except SearchValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    ranking: Optional[list[ScoreEntryResponse]] = None
    if payload.rank and payload.requester_id is not None and page.precondition_failure is None:
        profile = repository.get_requester_profile(payload.requester_id)
        if profile is not None:
            ranking = [
                ScoreEntryResponse.from_domain(entry)
                for entry in ranking_service.rank_candidates(page.rooms, profile)
            ]

    return SearchAvailabilityResponse(
        rooms=[RoomResponse.from_domain(room) for room in page.rooms],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
        precondition_failure=page.precondition_failure,
        ranking=ranking,
    )


@router.post(
    "/recommendations/rank",
    response_model=RankCandidatesResponse,
    status_code=status.HTTP_200_OK,
)
async def rank_candidates(
    payload: RankCandidatesRequest,
    ranking_service: CandidateRankingService = Depends(get_ranking_service),
    repository: DataRepository = Depends(get_repository),
) -> RankCandidatesResponse:
    """Rank caller-supplied rooms for a requester."""
    profile = repository.get_requester_profile(payload.requester_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"requester {payload.requester_id} not found",
        )
    rooms = repository.list_rooms_by_ids(payload.room_ids)
    ranking = ranking_service.rank_candidates(rooms, profile)
    return RankCandidatesResponse(
        ranking=[ScoreEntryResponse.from_domain(entry) for entry in ranking]
    )
