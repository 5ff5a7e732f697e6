"""Domain models for recurrence-aware room booking and ranking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional


@dataclass(frozen=True)
class Room:
    room_id: int
    label: str
    room_type: str = ""
    specialty_id: Optional[int] = None
    block: str = ""
    active: bool = True


@dataclass(frozen=True)
class RoomFilters:
    query: Optional[str] = None
    block: Optional[str] = None
    room_type: Optional[str] = None
    specialty_id: Optional[int] = None
    requester_id: Optional[int] = None


@dataclass(frozen=True)
class RequestedWindow:
    """Civil (wall-clock) window as submitted by a caller."""

    date: str
    start_time: str
    end_time: str
    recurring: bool = False
    recurrence_end: Optional[str] = None


@dataclass(frozen=True)
class NormalizedWindow:
    """A requested window resolved to absolute UTC instants.

    `local_date`, `local_start` and `local_end` keep the civil values so the
    conflict rules can compare weekdays and times of day without converting
    back. `recurrence_end` is the inclusive end of the cutoff day.
    """

    index: int
    local_date: date
    local_start: time
    local_end: time
    start: datetime
    end: datetime
    recurring: bool = False
    recurrence_end_date: Optional[date] = None
    recurrence_end: Optional[datetime] = None


@dataclass(frozen=True)
class Booking:
    room_id: int
    start: datetime
    end: datetime
    is_recurring: bool = False
    recurrence_end: Optional[datetime] = None
    booking_id: Optional[int] = None
    requester_id: Optional[int] = None


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    message: Optional[str] = None
    booking_id: Optional[int] = None
    window_index: Optional[int] = None


NO_CONFLICT = ConflictResult(conflict=False)


@dataclass(frozen=True)
class UsageStats:
    usage_rate: Optional[float] = None
    cancellation_count: int = 0


@dataclass(frozen=True)
class RequesterProfile:
    requester_id: int
    specialty_id: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class AgentScore:
    points: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class ScoreEntry:
    room: Room
    score: float
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SearchPage:
    rooms: list[Room]
    next_cursor: Optional[int]
    has_more: bool
    precondition_failure: Optional[str] = None


@dataclass(frozen=True)
class BookingOutcome:
    booked: bool
    booking_ids: list[int] = field(default_factory=list)
    conflict: Optional[ConflictResult] = None
