"""Tests for civil wall-clock normalization and DST handling."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from roombook.domain.models import RequestedWindow
from roombook.services.time_window_service import (
    InvalidDateError,
    InvalidTimeError,
    InvalidTimeRangeError,
    TimeWindowNormalizer,
    UnknownTimezoneError,
)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def sao_paulo() -> TimeWindowNormalizer:
    return TimeWindowNormalizer(civil_timezone="America/Sao_Paulo")


@pytest.fixture
def new_york() -> TimeWindowNormalizer:
    return TimeWindowNormalizer(civil_timezone="America/New_York")


# --- basic conversion ---

def test_normalize_converts_local_wall_clock_to_utc(sao_paulo) -> None:
    start, end = sao_paulo.normalize("2025-11-12", "09:00", "10:00")
    assert start == utc(2025, 11, 12, 12, 0)
    assert end == utc(2025, 11, 12, 13, 0)


def test_normalize_is_deterministic_and_preserves_duration(sao_paulo) -> None:
    first = sao_paulo.normalize("2025-06-02", "08:15", "11:45")
    second = sao_paulo.normalize("2025-06-02", "08:15", "11:45")
    assert first == second
    assert first[1] - first[0] == timedelta(hours=3, minutes=30)


def test_normalized_instant_round_trips_through_local_time(sao_paulo) -> None:
    start, end = sao_paulo.normalize("2025-06-02", "08:15", "11:45")
    local_start = sao_paulo.to_local(start)
    again = sao_paulo.normalize(
        local_start.date().isoformat(),
        local_start.strftime("%H:%M"),
        sao_paulo.to_local(end).strftime("%H:%M"),
    )
    assert again == (start, end)


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(UnknownTimezoneError):
        TimeWindowNormalizer(civil_timezone="Mars/Olympus_Mons")


# --- validation ---

def test_inverted_range_raises(sao_paulo) -> None:
    with pytest.raises(InvalidTimeRangeError):
        sao_paulo.normalize("2025-11-12", "10:00", "09:00")


def test_empty_range_raises(sao_paulo) -> None:
    with pytest.raises(InvalidTimeRangeError):
        sao_paulo.normalize("2025-11-12", "10:00", "10:00")


def test_unparsable_date_raises(sao_paulo) -> None:
    with pytest.raises(InvalidDateError):
        sao_paulo.normalize("12/11/2025", "09:00", "10:00")


def test_impossible_calendar_date_raises(sao_paulo) -> None:
    with pytest.raises(InvalidDateError):
        sao_paulo.normalize("2025-02-30", "09:00", "10:00")


def test_unparsable_time_raises(sao_paulo) -> None:
    with pytest.raises(InvalidTimeError):
        sao_paulo.normalize("2025-11-12", "9h", "10:00")


def test_error_identifies_failing_window(sao_paulo) -> None:
    windows = [
        RequestedWindow(date="2025-11-12", start_time="09:00", end_time="10:00"),
        RequestedWindow(date="2025-11-13", start_time="11:00", end_time="10:00"),
    ]
    with pytest.raises(InvalidTimeRangeError) as exc_info:
        sao_paulo.normalize_windows(windows)
    assert exc_info.value.window_index == 1
    assert "window 1" in str(exc_info.value)


def test_empty_window_list_raises(sao_paulo) -> None:
    with pytest.raises(InvalidTimeRangeError):
        sao_paulo.normalize_windows([])


# --- recurrence cutoff ---

def test_recurrence_end_is_inclusive_through_end_of_local_day(sao_paulo) -> None:
    cutoff = sao_paulo.normalize_recurrence_end("2025-01-20")
    local_cutoff = sao_paulo.to_local(cutoff)
    assert local_cutoff.date() == date(2025, 1, 20)
    assert local_cutoff.time() == time.max
    # 23:59:59.999999 at UTC-3 is the next UTC day.
    assert cutoff.date() == date(2025, 1, 21)


def test_recurring_window_carries_cutoff(sao_paulo) -> None:
    window = sao_paulo.normalize_window(
        RequestedWindow(
            date="2025-01-06",
            start_time="08:00",
            end_time="10:00",
            recurring=True,
            recurrence_end="2025-01-20",
        )
    )
    assert window.recurring is True
    assert window.recurrence_end_date == date(2025, 1, 20)
    assert window.recurrence_end == sao_paulo.normalize_recurrence_end("2025-01-20")
    assert window.local_start == time(8, 0)
    assert window.local_end == time(10, 0)


def test_recurrence_end_before_first_occurrence_raises(sao_paulo) -> None:
    with pytest.raises(InvalidTimeRangeError):
        sao_paulo.normalize_window(
            RequestedWindow(
                date="2025-01-06",
                start_time="08:00",
                end_time="10:00",
                recurring=True,
                recurrence_end="2025-01-05",
            )
        )


def test_recurrence_end_on_first_occurrence_day_is_allowed(sao_paulo) -> None:
    window = sao_paulo.normalize_window(
        RequestedWindow(
            date="2025-01-06",
            start_time="08:00",
            end_time="10:00",
            recurring=True,
            recurrence_end="2025-01-06",
        )
    )
    assert window.recurrence_end_date == date(2025, 1, 6)


def test_recurrence_end_ignored_for_one_off_window(sao_paulo) -> None:
    window = sao_paulo.normalize_window(
        RequestedWindow(
            date="2025-01-06",
            start_time="08:00",
            end_time="10:00",
            recurring=False,
            recurrence_end="2025-01-01",
        )
    )
    assert window.recurrence_end is None


# --- DST transitions (fold=0 policy) ---

def test_ambiguous_fall_back_time_resolves_to_earlier_instant(new_york) -> None:
    # 01:30 happens twice on 2025-11-02; the first one is EDT (UTC-4).
    start, _ = new_york.normalize("2025-11-02", "01:30", "03:00")
    assert start == utc(2025, 11, 2, 5, 30)


def test_fall_back_window_duration_includes_repeated_hour(new_york) -> None:
    start, end = new_york.normalize("2025-11-02", "00:30", "02:30")
    assert end - start == timedelta(hours=3)


def test_nonexistent_spring_forward_time_uses_pre_transition_offset(new_york) -> None:
    # 02:30 does not exist on 2025-03-09; read with EST (UTC-5) it lands at 03:30 EDT.
    start, end = new_york.normalize("2025-03-09", "02:30", "04:00")
    assert start == utc(2025, 3, 9, 7, 30)
    assert new_york.to_local(start).time() == time(3, 30)
    assert end - start == timedelta(minutes=30)


def test_spring_forward_window_local_times_are_read_back_from_instants(new_york) -> None:
    window = new_york.normalize_window(
        RequestedWindow(date="2025-03-09", start_time="02:30", end_time="04:00")
    )
    assert window.local_start == time(3, 30)
    assert window.local_end == time(4, 0)


def test_window_entirely_inside_gap_is_rejected(new_york) -> None:
    # 02:00-02:45 maps to 03:00-03:45 EDT; 02:45-02:15 stays inverted.
    start, end = new_york.normalize("2025-03-09", "02:00", "02:45")
    assert end - start == timedelta(minutes=45)
    with pytest.raises(InvalidTimeRangeError):
        new_york.normalize("2025-03-09", "02:45", "02:15")


def test_normalizing_dst_edge_twice_is_idempotent(new_york) -> None:
    assert new_york.normalize("2025-11-02", "01:30", "01:45") == new_york.normalize(
        "2025-11-02", "01:30", "01:45"
    )
