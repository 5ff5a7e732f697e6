"""Booking creation with a pre-commit conflict re-check."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from roombook.domain.models import BookingOutcome, RequestedWindow
from roombook.repository.data_repository import DataRepository
from roombook.repository.interfaces import BookingRepository
from roombook.services.conflict_service import ConflictEvaluator
from roombook.services.time_window_service import TimeWindowNormalizer
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger


logger = get_logger(__name__)


class BookingError(Exception):
    """Base class for booking flow failures."""


class RoomNotFoundError(BookingError):
    """Raised when the target room does not exist or is inactive."""


class BookingNotFoundError(BookingError):
    """Raised when a booking id does not exist."""


class RequesterNotEligibleError(BookingError):
    """Raised when the requester is unknown or inactive."""


class WriteRaceLostError(BookingError):
    """Raised when a concurrent booking won between search and commit.

    Callers must rerun the whole search-then-book flow; the set of free rooms
    may have changed.
    """

    def __init__(self, message: str, conflict_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.conflict_message = conflict_message


class BookingService:
    """Search-independent booking entry point.

    The flow is: normalize, read fresh active bookings and report a conflict
    as data, then hand the windows to the writer which repeats the check
    inside its transaction. A collision found only by that second check means
    another writer committed in between.
    """

    def __init__(
        self,
        repository: Optional[BookingRepository] = None,
        evaluator: Optional[ConflictEvaluator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._evaluator = evaluator or ConflictEvaluator(
            TimeWindowNormalizer(settings=self._settings)
        )
        self._clock = clock

    def _ensure_requester(self, requester_id: Optional[int]) -> None:
        if requester_id is None:
            return
        profile = self._repository.get_requester_profile(requester_id)
        if profile is None:
            raise RequesterNotEligibleError(f"requester {requester_id} is unknown")
        if not profile.is_active:
            raise RequesterNotEligibleError(f"requester {requester_id} is inactive")

    def book(
        self,
        *,
        room_id: int,
        windows: Sequence[RequestedWindow],
        requester_id: Optional[int] = None,
    ) -> BookingOutcome:
        normalized = self._evaluator.normalizer.normalize_windows(windows)
        self._evaluator.validate_windows_disjoint(normalized)

        room = self._repository.get_room(room_id)
        if room is None or not room.active:
            raise RoomNotFoundError(f"room {room_id} not found")
        self._ensure_requester(requester_id)

        as_of = self._clock()
        existing = self._repository.get_active_bookings(room_id, as_of)
        precheck = self._evaluator.find_conflict(normalized, existing)
        if precheck.conflict:
            logger.info(
                "Booking rejected | room_id=%s | conflict=%s",
                room_id,
                precheck.message,
            )
            return BookingOutcome(booked=False, conflict=precheck)

        outcome = self._repository.insert_if_no_conflict(
            room_id,
            requester_id,
            normalized,
            self._evaluator,
            as_of,
        )
        if not outcome.booked:
            conflict_message = outcome.conflict.message if outcome.conflict else None
            logger.warning(
                "Booking lost write race | room_id=%s | conflict=%s",
                room_id,
                conflict_message,
            )
            raise WriteRaceLostError(
                f"room {room_id} was booked concurrently; search again",
                conflict_message,
            )
        return outcome

    def reschedule(self, *, booking_id: int, window: RequestedWindow) -> BookingOutcome:
        normalized = self._evaluator.normalizer.normalize_window(window, 0)
        outcome = self._repository.reschedule_if_no_conflict(
            booking_id,
            normalized,
            self._evaluator,
            self._clock(),
        )
        if outcome is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        return outcome

    def cancel(self, *, booking_id: int, reason: str = "CANCELLED_BY_REQUESTER") -> None:
        if not self._repository.cancel_booking(booking_id, reason):
            raise BookingNotFoundError(f"booking {booking_id} not found")
