"""Recurrence-aware conflict evaluation between requested windows and bookings.

Recurring reservations are never expanded into concrete dates. Each side is
reduced to a weekly pattern (first civil date, weekday, optional last civil
date, time of day) and the four recurrence combinations are decided on that
compact form.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence

from roombook.domain.models import NO_CONFLICT, Booking, ConflictResult, NormalizedWindow
from roombook.services.time_window_service import (
    WEEKDAY_NAMES,
    InvalidTimeRangeError,
    TimeWindowNormalizer,
)
from roombook.utils.logger import get_logger


logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 3600


@dataclass(frozen=True)
class WeeklyPattern:
    first_date: date
    last_date: Optional[date]
    weekday: int
    start_seconds: int
    end_seconds: int
    recurring: bool
    day_offset: int = 0

    def date_range_overlaps(self, other: "WeeklyPattern") -> bool:
        latest_first = max(self.first_date, other.first_date)
        if self.last_date is not None and latest_first > self.last_date:
            return False
        if other.last_date is not None and latest_first > other.last_date:
            return False
        return True

    def time_of_day_overlaps(self, other: "WeeklyPattern") -> bool:
        return self.start_seconds < other.end_seconds and other.start_seconds < self.end_seconds

    def segments(self) -> list["WeeklyPattern"]:
        """Split at local midnight; each piece lands on its own weekday and dates."""
        pieces: list[WeeklyPattern] = []
        start, end, offset = self.start_seconds, self.end_seconds, 0
        while True:
            shift = timedelta(days=offset)
            pieces.append(
                WeeklyPattern(
                    first_date=self.first_date + shift,
                    last_date=self.last_date + shift if self.last_date is not None else None,
                    weekday=(self.weekday + offset) % 7,
                    start_seconds=start,
                    end_seconds=min(end, SECONDS_PER_DAY),
                    recurring=self.recurring,
                    day_offset=offset,
                )
            )
            if end <= SECONDS_PER_DAY:
                return pieces
            start, end, offset = 0, end - SECONDS_PER_DAY, offset + 1


def _seconds_of_day(value: time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def _format_clock(seconds: int) -> str:
    hours, remainder = divmod(seconds % SECONDS_PER_DAY, 3600)
    return f"{hours:02d}:{remainder // 60:02d}"


def intervals_overlap(
    first_start: datetime,
    first_end: datetime,
    second_start: datetime,
    second_end: datetime,
) -> bool:
    """Half-open overlap: touching intervals do not collide."""
    return first_start < second_end and second_start < first_end


class ConflictEvaluator:
    """Pure decision function; safe to share across threads."""

    def __init__(self, normalizer: Optional[TimeWindowNormalizer] = None) -> None:
        self._normalizer = normalizer or TimeWindowNormalizer()

    @property
    def normalizer(self) -> TimeWindowNormalizer:
        return self._normalizer

    def _pattern(
        self,
        start: datetime,
        end: datetime,
        recurring: bool,
        recurrence_end: Optional[datetime],
    ) -> WeeklyPattern:
        local_start = self._normalizer.to_local(start)
        local_end = self._normalizer.to_local(end)
        start_seconds = _seconds_of_day(local_start.time())
        if local_end.date() == local_start.date():
            end_seconds = _seconds_of_day(local_end.time())
        else:
            # Spans local midnight: measured past 24:00; `segments` splits it.
            end_seconds = start_seconds + int((end - start).total_seconds())

        first_date = local_start.date()
        if not recurring:
            last_date: Optional[date] = first_date
        elif recurrence_end is not None:
            last_date = self._normalizer.to_local(recurrence_end).date()
        else:
            last_date = None
        return WeeklyPattern(
            first_date=first_date,
            last_date=last_date,
            weekday=first_date.weekday(),
            start_seconds=start_seconds,
            end_seconds=end_seconds,
            recurring=recurring,
        )

    def window_pattern(self, window: NormalizedWindow) -> WeeklyPattern:
        """Build the pattern from the civil values kept on the window."""
        start_seconds = _seconds_of_day(window.local_start)
        end_seconds = _seconds_of_day(window.local_end)
        if end_seconds <= start_seconds:
            # Read back across midnight; only the instants know the length.
            return self._pattern(window.start, window.end, window.recurring, window.recurrence_end)
        if not window.recurring:
            last_date: Optional[date] = window.local_date
        else:
            last_date = window.recurrence_end_date
        return WeeklyPattern(
            first_date=window.local_date,
            last_date=last_date,
            weekday=window.local_date.weekday(),
            start_seconds=start_seconds,
            end_seconds=end_seconds,
            recurring=window.recurring,
        )

    def booking_pattern(self, booking: Booking) -> WeeklyPattern:
        return self._pattern(
            booking.start,
            booking.end,
            booking.is_recurring,
            booking.recurrence_end if booking.is_recurring else None,
        )

    def evaluate(self, requested: NormalizedWindow, existing: Booking) -> ConflictResult:
        """Decide whether `requested` collides with one stored booking.

        - one-off vs one-off: absolute instant overlap.
        - one-off vs recurring: the requested date falls on the booking's
          weekday inside its active range and the times of day overlap.
        - recurring vs one-off: the booking's date falls on the requested
          weekday inside the requested range and the times of day overlap.
        - recurring vs recurring: same weekday, overlapping active ranges and
          overlapping times of day.

        Patterns that cross local midnight are compared piece by piece, so the
        part after midnight is matched against the following weekday.
        """
        if not requested.recurring and not existing.is_recurring:
            if not intervals_overlap(requested.start, requested.end, existing.start, existing.end):
                return NO_CONFLICT
            local_start = self._normalizer.to_local(existing.start)
            local_end = self._normalizer.to_local(existing.end)
            return self._conflict(
                existing,
                requested,
                local_start.date(),
                _seconds_of_day(local_start.time()),
                _seconds_of_day(local_end.time()),
            )

        requested_pattern = self.window_pattern(requested)
        existing_pattern = self.booking_pattern(existing)
        for requested_piece in requested_pattern.segments():
            for existing_piece in existing_pattern.segments():
                if requested_piece.weekday != existing_piece.weekday:
                    continue
                if not requested_piece.date_range_overlaps(existing_piece):
                    continue
                if not requested_piece.time_of_day_overlaps(existing_piece):
                    continue
                first_shared_date = max(requested_piece.first_date, existing_piece.first_date)
                # Report the occurrence by the day it starts on.
                occurrence_date = first_shared_date - timedelta(days=existing_piece.day_offset)
                return self._conflict(
                    existing,
                    requested,
                    occurrence_date,
                    existing_pattern.start_seconds,
                    existing_pattern.end_seconds,
                )
        return NO_CONFLICT

    def _conflict(
        self,
        existing: Booking,
        requested: NormalizedWindow,
        collision_date: date,
        start_seconds: int,
        end_seconds: int,
    ) -> ConflictResult:
        subject = (
            f"booking {existing.booking_id}"
            if existing.booking_id is not None
            else "an existing booking"
        )
        cadence = " (weekly)" if existing.is_recurring else ""
        message = (
            f"Room {existing.room_id} is already reserved by {subject} on "
            f"{WEEKDAY_NAMES[collision_date.weekday()]} {collision_date.isoformat()} "
            f"{_format_clock(start_seconds)}-{_format_clock(end_seconds)}{cadence}"
        )
        return ConflictResult(
            conflict=True,
            message=message,
            booking_id=existing.booking_id,
            window_index=requested.index,
        )

    def find_conflict(
        self,
        windows: Sequence[NormalizedWindow],
        bookings: Iterable[Booking],
    ) -> ConflictResult:
        """Return the first colliding (window, booking) pair in input order."""
        booking_list = list(bookings)
        for window in windows:
            for booking in booking_list:
                result = self.evaluate(window, booking)
                if result.conflict:
                    logger.debug(
                        "Conflict found | room_id=%s | booking_id=%s | window_index=%s",
                        booking.room_id,
                        booking.booking_id,
                        window.index,
                    )
                    return result
        return NO_CONFLICT

    def validate_windows_disjoint(self, windows: Sequence[NormalizedWindow]) -> None:
        """Reject a request whose own windows would collide with each other."""
        for position, window in enumerate(windows):
            for other in windows[position + 1:]:
                result = self.evaluate(window, window_as_booking(other, room_id=0))
                if result.conflict:
                    pattern = self.window_pattern(other)
                    raise InvalidTimeRangeError(
                        (
                            f"overlaps window {other.index} on "
                            f"{WEEKDAY_NAMES[pattern.weekday]} "
                            f"{_format_clock(pattern.start_seconds)}-"
                            f"{_format_clock(pattern.end_seconds)}"
                        ),
                        window.index,
                    )


def window_as_booking(
    window: NormalizedWindow,
    room_id: int,
    booking_id: Optional[int] = None,
    requester_id: Optional[int] = None,
) -> Booking:
    return Booking(
        room_id=room_id,
        start=window.start,
        end=window.end,
        is_recurring=window.recurring,
        recurrence_end=window.recurrence_end,
        booking_id=booking_id,
        requester_id=requester_id,
    )