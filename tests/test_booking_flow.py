from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from roombook.domain.models import (
    BookingOutcome,
    ConflictResult,
    RequestedWindow,
    RequesterProfile,
    Room,
    RoomFilters,
)
from roombook.repository.data_repository import DataRepository, to_db_instant
from roombook.services.availability_service import AvailabilitySearchService
from roombook.services.booking_service import (
    BookingNotFoundError,
    BookingService,
    RequesterNotEligibleError,
    RoomNotFoundError,
    WriteRaceLostError,
)
from roombook.services.time_window_service import InvalidTimeRangeError, TimeWindowNormalizer
from roombook.utils.config import get_settings


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        civil_timezone="America/Sao_Paulo",
    )


def _build_service(tmp_path, filename: str = "booking.db", repository_cls=DataRepository):
    settings = _build_test_settings(tmp_path, filename)
    repository = repository_cls(settings)
    repository.initialize_database()
    service = BookingService(repository=repository, settings=settings, clock=lambda: NOW)
    return service, repository, settings


def _window(civil_date: str, start: str, end: str, **kwargs) -> RequestedWindow:
    return RequestedWindow(date=civil_date, start_time=start, end_time=end, **kwargs)


# --- booking ---

def test_book_persists_every_window(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    requester_id = repository.create_requester()

    outcome = service.book(
        room_id=room_id,
        windows=[
            _window("2025-11-12", "09:00", "10:00"),
            _window("2025-11-13", "09:00", "10:00", recurring=True, recurrence_end="2025-12-31"),
        ],
        requester_id=requester_id,
    )

    assert outcome.booked is True
    assert len(outcome.booking_ids) == 2
    recurring = repository.get_booking(outcome.booking_ids[1])
    assert recurring is not None
    assert recurring.is_recurring is True
    assert recurring.requester_id == requester_id
    assert recurring.start == datetime(2025, 11, 13, 12, 0, tzinfo=timezone.utc)
    assert recurring.recurrence_end is not None


def test_conflicting_booking_is_reported_as_data(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    first = service.book(
        room_id=room_id,
        windows=[_window("2025-11-05", "08:00", "12:00", recurring=True)],
    )

    outcome = service.book(room_id=room_id, windows=[_window("2025-11-12", "09:00", "10:00")])

    assert outcome.booked is False
    assert outcome.booking_ids == []
    assert outcome.conflict is not None
    assert outcome.conflict.booking_id == first.booking_ids[0]
    assert "Wednesday 2025-11-12 08:00-12:00 (weekly)" in outcome.conflict.message
    assert repository.count_bookings() == 1


def test_partial_conflict_writes_nothing(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    service.book(room_id=room_id, windows=[_window("2025-11-13", "09:00", "10:00")])

    outcome = service.book(
        room_id=room_id,
        windows=[
            _window("2025-11-12", "09:00", "10:00"),
            _window("2025-11-13", "09:30", "10:30"),
        ],
    )

    assert outcome.booked is False
    assert outcome.conflict.window_index == 1
    assert repository.count_bookings() == 1


def test_unknown_or_inactive_room_is_rejected(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    closed = repository.create_room("Closed room", active=False)

    with pytest.raises(RoomNotFoundError):
        service.book(room_id=closed, windows=[_window("2025-11-12", "09:00", "10:00")])
    with pytest.raises(RoomNotFoundError):
        service.book(room_id=9999, windows=[_window("2025-11-12", "09:00", "10:00")])


def test_inactive_requester_cannot_book(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    requester_id = repository.create_requester(active=False)

    with pytest.raises(RequesterNotEligibleError):
        service.book(
            room_id=room_id,
            windows=[_window("2025-11-12", "09:00", "10:00")],
            requester_id=requester_id,
        )
    assert repository.count_bookings() == 0


def test_invalid_window_is_rejected_before_writing(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")

    with pytest.raises(InvalidTimeRangeError):
        service.book(room_id=room_id, windows=[_window("2025-11-12", "10:00", "10:00")])
    assert repository.count_bookings() == 0


# --- write race ---

class _StaleReadRepository(DataRepository):
    """Pre-check sees an empty room, as if a rival committed right after it."""

    def get_active_bookings(self, room_id, as_of, exclude_booking_id=None):
        return []


def test_commit_time_recheck_raises_write_race_lost(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path, repository_cls=_StaleReadRepository)
    room_id = repository.create_room("Room 1")
    start = datetime(2025, 11, 12, 12, 0, tzinfo=timezone.utc)
    end = datetime(2025, 11, 12, 13, 0, tzinfo=timezone.utc)
    rival_id = repository.insert_booking(room_id, start, end)

    with pytest.raises(WriteRaceLostError) as exc_info:
        service.book(room_id=room_id, windows=[_window("2025-11-12", "09:30", "10:30")])

    assert f"booking {rival_id}" in exc_info.value.conflict_message
    assert repository.count_bookings() == 1


class _InMemoryWriter:
    """Room store outside SQLite whose commit always loses to a rival."""

    def __init__(self) -> None:
        self.inserted = 0

    def get_room(self, room_id):
        return Room(room_id=room_id, label=f"Room {room_id}")

    def get_requester_profile(self, requester_id):
        return RequesterProfile(requester_id=requester_id)

    def list_candidates(self, filters, after_cursor, limit):
        return []

    def get_active_bookings(self, room_id, as_of, exclude_booking_id=None):
        return []

    def insert_if_no_conflict(self, room_id, requester_id, windows, evaluator, as_of):
        self.inserted += 1
        return BookingOutcome(booked=False, conflict=ConflictResult(True, "taken"))

    def reschedule_if_no_conflict(self, booking_id, window, evaluator, as_of):
        return None

    def cancel_booking(self, booking_id, reason):
        return False


def test_booking_service_runs_against_any_booking_writer(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "unused.db")
    writer = _InMemoryWriter()
    service = BookingService(repository=writer, settings=settings, clock=lambda: NOW)

    with pytest.raises(WriteRaceLostError) as exc_info:
        service.book(room_id=4, windows=[_window("2025-11-12", "09:00", "10:00")], requester_id=9)

    assert exc_info.value.conflict_message == "taken"
    assert writer.inserted == 1
    with pytest.raises(BookingNotFoundError):
        service.cancel(booking_id=1)
    assert not settings.database_path.exists()


def test_concurrent_bookings_for_same_slot_admit_one_writer(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    barrier = threading.Barrier(6)
    results: list[str] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            outcome = service.book(
                room_id=room_id,
                windows=[_window("2025-11-12", "09:00", "10:00")],
            )
            label = "booked" if outcome.booked else "conflict"
        except WriteRaceLostError:
            label = "race_lost"
        with lock:
            results.append(label)

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count("booked") == 1
    assert len(results) == 6
    assert repository.count_bookings() == 1


def test_search_then_book_flow(tmp_path) -> None:
    service, repository, settings = _build_service(tmp_path)
    search = AvailabilitySearchService(
        room_repository=repository,
        profile_provider=repository,
        settings=settings,
        clock=lambda: NOW,
    )
    room_ids = [repository.create_room(f"Room {n}") for n in range(1, 4)]
    window = _window("2025-11-12", "09:00", "10:00")

    before = search.search(RoomFilters(), [window])
    service.book(room_id=before.rooms[0].room_id, windows=[window])
    after = search.search(RoomFilters(), [window])

    assert [room.room_id for room in before.rooms] == room_ids
    assert [room.room_id for room in after.rooms] == room_ids[1:]


# --- reschedule / cancel ---

def test_reschedule_ignores_the_booking_being_moved(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    booked = service.book(room_id=room_id, windows=[_window("2025-11-12", "09:00", "10:00")])
    booking_id = booked.booking_ids[0]

    outcome = service.reschedule(
        booking_id=booking_id,
        window=_window("2025-11-12", "09:30", "10:30"),
    )

    assert outcome.booked is True
    moved = repository.get_booking(booking_id)
    assert moved.start == datetime(2025, 11, 12, 12, 30, tzinfo=timezone.utc)
    assert moved.end == datetime(2025, 11, 12, 13, 30, tzinfo=timezone.utc)


def test_reschedule_into_another_booking_is_reported(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    first = service.book(room_id=room_id, windows=[_window("2025-11-12", "09:00", "10:00")])
    second = service.book(room_id=room_id, windows=[_window("2025-11-12", "11:00", "12:00")])

    outcome = service.reschedule(
        booking_id=second.booking_ids[0],
        window=_window("2025-11-12", "09:30", "10:30"),
    )

    assert outcome.booked is False
    assert outcome.conflict.booking_id == first.booking_ids[0]
    unchanged = repository.get_booking(second.booking_ids[0])
    assert unchanged.start == datetime(2025, 11, 12, 14, 0, tzinfo=timezone.utc)


def test_reschedule_unknown_booking_raises(tmp_path) -> None:
    service, _, _ = _build_service(tmp_path)
    with pytest.raises(BookingNotFoundError):
        service.reschedule(booking_id=42, window=_window("2025-11-12", "09:00", "10:00"))


def test_cancel_archives_booking_and_frees_the_slot(tmp_path) -> None:
    service, repository, _ = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    booked = service.book(room_id=room_id, windows=[_window("2025-11-12", "09:00", "10:00")])

    service.cancel(booking_id=booked.booking_ids[0])

    assert repository.get_booking(booked.booking_ids[0]) is None
    stats = repository.get_usage_stats(room_id)
    assert stats is not None
    assert stats.cancellation_count == 1
    again = service.book(room_id=room_id, windows=[_window("2025-11-12", "09:00", "10:00")])
    assert again.booked is True


def test_cancel_archives_recurrence_cutoff(tmp_path) -> None:
    service, repository, settings = _build_service(tmp_path)
    room_id = repository.create_room("Room 1")
    booked = service.book(
        room_id=room_id,
        windows=[_window("2025-11-12", "09:00", "10:00", recurring=True, recurrence_end="2025-12-31")],
    )
    cutoff = TimeWindowNormalizer(settings=settings).normalize_recurrence_end("2025-12-31")

    service.cancel(booking_id=booked.booking_ids[0])

    with sqlite3.connect(repository.database_path) as conn:
        row = conn.execute(
            """
            SELECT was_recurring, original_recurrence_end_utc
            FROM CancelledBookings
            WHERE booking_id = ?;
            """,
            (booked.booking_ids[0],),
        ).fetchone()
    assert row == (1, to_db_instant(cutoff))


def test_initialize_adds_cutoff_column_to_existing_archive(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "legacy.db")
    with sqlite3.connect(settings.database_path) as conn:
        conn.execute(
            """
            CREATE TABLE CancelledBookings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                booking_id INTEGER NOT NULL,
                room_id INTEGER NOT NULL,
                requester_id INTEGER,
                original_start_utc TEXT NOT NULL,
                original_end_utc TEXT NOT NULL,
                was_recurring INTEGER NOT NULL,
                reason TEXT NOT NULL,
                cancelled_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            """
        )

    DataRepository(settings).initialize_database()

    with sqlite3.connect(settings.database_path) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(CancelledBookings);")}
    assert "original_recurrence_end_utc" in columns


def test_cancel_unknown_booking_raises(tmp_path) -> None:
    service, _, _ = _build_service(tmp_path)
    with pytest.raises(BookingNotFoundError):
        service.cancel(booking_id=42)
