"""Collaborator contracts consumed by the booking core."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from roombook.domain.models import (
    Booking,
    BookingOutcome,
    NormalizedWindow,
    RequesterProfile,
    Room,
    RoomFilters,
    UsageStats,
)

if TYPE_CHECKING:
    from roombook.services.conflict_service import ConflictEvaluator


class RoomRepository(Protocol):
    def list_candidates(
        self,
        filters: RoomFilters,
        after_cursor: Optional[int],
        limit: int,
    ) -> list[Room]:
        ...

    def get_active_bookings(
        self,
        room_id: int,
        as_of: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[Booking]:
        ...


class StatsRepository(Protocol):
    def get_usage_stats(self, room_id: int) -> Optional[UsageStats]:
        ...


class RequesterProfileProvider(Protocol):
    def get_requester_profile(self, requester_id: int) -> Optional[RequesterProfile]:
        ...


class BookingWriter(Protocol):
    def insert_if_no_conflict(
        self,
        room_id: int,
        requester_id: Optional[int],
        windows: Sequence[NormalizedWindow],
        evaluator: "ConflictEvaluator",
        as_of: datetime,
    ) -> BookingOutcome:
        ...

    def reschedule_if_no_conflict(
        self,
        booking_id: int,
        window: NormalizedWindow,
        evaluator: "ConflictEvaluator",
        as_of: datetime,
    ) -> Optional[BookingOutcome]:
        ...

    def cancel_booking(self, booking_id: int, reason: str) -> bool:
        ...


class BookingRepository(RoomRepository, RequesterProfileProvider, BookingWriter, Protocol):
    """Everything the booking flow reads and writes."""

    def get_room(self, room_id: int) -> Optional[Room]:
        ...


class RecentUsageProvider(Protocol):
    def count_recent_bookings_by_room(
        self,
        requester_id: int,
        since: datetime,
        until: datetime,
    ) -> dict[int, int]:
        ...
