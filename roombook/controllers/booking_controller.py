"""HTTP controller layer for booking creation, rescheduling and cancellation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from roombook.controllers.availability_controller import ConflictResponse, WindowPayload
from roombook.controllers.dependencies import get_booking_service
from roombook.domain.models import BookingOutcome
from roombook.services.booking_service import (
    BookingNotFoundError,
    BookingService,
    RequesterNotEligibleError,
    RoomNotFoundError,
    WriteRaceLostError,
)
from roombook.services.time_window_service import WindowValidationError
from roombook.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["bookings"])


class CreateBookingRequest(BaseModel):
    room_id: int = Field(gt=0)
    requester_id: Optional[int] = Field(default=None, gt=0)
    windows: list[WindowPayload] = Field(min_length=1)


class RescheduleBookingRequest(BaseModel):
    window: WindowPayload


class CancelBookingRequest(BaseModel):
    reason: str = Field(default="CANCELLED_BY_REQUESTER", min_length=1)


class BookingResponse(BaseModel):
    booking_ids: list[int]


def _conflict_exception(outcome: BookingOutcome) -> HTTPException:
    detail = (
        ConflictResponse.from_domain(outcome.conflict).model_dump()
        if outcome.conflict is not None
        else {"conflict": True}
    )
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: CreateBookingRequest,
    service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Book every requested window in one room or none of them."""
    try:
        outcome = service.book(
            room_id=payload.room_id,
            requester_id=payload.requester_id,
            windows=[window.to_domain() for window in payload.windows],
        )
    except WindowValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "window_index": exc.window_index},
        ) from exc
    except RoomNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except RequesterNotEligibleError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except WriteRaceLostError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "race_lost": True},
        ) from exc

    if not outcome.booked:
        raise _conflict_exception(outcome)
    return BookingResponse(booking_ids=outcome.booking_ids)


@router.patch(
    "/bookings/{booking_id}",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
async def reschedule_booking(
    booking_id: int,
    payload: RescheduleBookingRequest,
    service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Move a booking; the booking never conflicts with itself."""
    try:
        outcome = service.reschedule(booking_id=booking_id, window=payload.window.to_domain())
    except WindowValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "window_index": exc.window_index},
        ) from exc
    except BookingNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    if not outcome.booked:
        raise _conflict_exception(outcome)
    return BookingResponse(booking_ids=outcome.booking_ids)


@router.post(
    "/bookings/{booking_id}/cancel",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def cancel_booking(
    booking_id: int,
    payload: Optional[CancelBookingRequest] = None,
    service: BookingService = Depends(get_booking_service),
) -> Response:
    """Archive and remove a booking."""
    reason = (payload or CancelBookingRequest()).reason
    try:
        service.cancel(booking_id=booking_id, reason=reason)
    except BookingNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
