"""Civil wall-clock to UTC instant normalization.

All wall-clock values are interpreted in the single civil timezone configured
for the deployment. Local times are attached with ``fold=0``: an ambiguous
time inside a fall-back overlap resolves to its earlier instant, and a time
inside a spring-forward gap is read with the pre-transition offset, which
places it after the gap by the gap length.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from roombook.domain.models import NormalizedWindow, RequestedWindow
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger


logger = get_logger(__name__)

WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

_TIME_FORMATS = ("%H:%M", "%H:%M:%S")


class WindowValidationError(Exception):
    """Base class for rejected requested windows."""

    def __init__(self, message: str, window_index: Optional[int] = None) -> None:
        if window_index is not None:
            message = f"window {window_index}: {message}"
        super().__init__(message)
        self.window_index = window_index


class InvalidTimeRangeError(WindowValidationError):
    """Raised when a window is empty, inverted, or cut off before it starts."""


class InvalidDateError(WindowValidationError):
    """Raised when a civil date cannot be parsed."""


class InvalidTimeError(WindowValidationError):
    """Raised when a civil time cannot be parsed."""


class UnknownTimezoneError(ValueError):
    """Raised when the configured civil timezone is not in the tz database."""


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise UnknownTimezoneError(f"Unknown civil timezone: {name!r}") from exc


def parse_civil_date(value: str, window_index: Optional[int] = None) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise InvalidDateError(
            f"date must follow YYYY-MM-DD format, got {value!r}",
            window_index,
        ) from exc


def parse_civil_time(value: str, window_index: Optional[int] = None) -> time:
    for time_format in _TIME_FORMATS:
        try:
            return datetime.strptime(value, time_format).time()
        except (TypeError, ValueError):
            continue
    raise InvalidTimeError(
        f"time must follow HH:MM format, got {value!r}",
        window_index,
    )


class TimeWindowNormalizer:
    """Converts civil dates and times into UTC instants in one fixed zone."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        civil_timezone: Optional[str] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._zone_name = civil_timezone or self._settings.civil_timezone
        self._zone = resolve_timezone(self._zone_name)

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    @property
    def zone_name(self) -> str:
        return self._zone_name

    def to_instant(self, civil_date: date, civil_time: time) -> datetime:
        local = datetime.combine(civil_date, civil_time).replace(tzinfo=self._zone, fold=0)
        return local.astimezone(timezone.utc)

    def to_local(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            raise ValueError("instant must be timezone-aware")
        return instant.astimezone(self._zone)

    def normalize(
        self,
        civil_date: str,
        start_time: str,
        end_time: str,
        window_index: Optional[int] = None,
    ) -> tuple[datetime, datetime]:
        parsed_date = parse_civil_date(civil_date, window_index)
        parsed_start = parse_civil_time(start_time, window_index)
        parsed_end = parse_civil_time(end_time, window_index)
        start = self.to_instant(parsed_date, parsed_start)
        end = self.to_instant(parsed_date, parsed_end)
        if start >= end:
            raise InvalidTimeRangeError(
                f"start {start_time} must be earlier than end {end_time}",
                window_index,
            )
        return start, end

    def normalize_recurrence_end(
        self,
        civil_recurrence_end: str,
        window_index: Optional[int] = None,
    ) -> datetime:
        """Return the last instant of the cutoff day in the civil timezone."""
        cutoff_date = parse_civil_date(civil_recurrence_end, window_index)
        return self.to_instant(cutoff_date, time.max)

    def normalize_window(self, window: RequestedWindow, index: int = 0) -> NormalizedWindow:
        start, end = self.normalize(window.date, window.start_time, window.end_time, index)
        local_date = parse_civil_date(window.date, index)

        recurrence_end_date: Optional[date] = None
        recurrence_end: Optional[datetime] = None
        if window.recurring and window.recurrence_end:
            recurrence_end_date = parse_civil_date(window.recurrence_end, index)
            if recurrence_end_date < local_date:
                raise InvalidTimeRangeError(
                    (
                        f"recurrence_end {window.recurrence_end} is earlier than "
                        f"the first occurrence {window.date}"
                    ),
                    index,
                )
            recurrence_end = self.normalize_recurrence_end(window.recurrence_end, index)

        # Local times are read back from the instants; a value inside a DST
        # gap comes back shifted past the gap.
        return NormalizedWindow(
            index=index,
            local_date=local_date,
            local_start=self.to_local(start).time(),
            local_end=self.to_local(end).time(),
            start=start,
            end=end,
            recurring=window.recurring,
            recurrence_end_date=recurrence_end_date,
            recurrence_end=recurrence_end,
        )

    def normalize_windows(self, windows: Sequence[RequestedWindow]) -> list[NormalizedWindow]:
        if not windows:
            raise InvalidTimeRangeError("no windows submitted")
        normalized = [
            self.normalize_window(window, index)
            for index, window in enumerate(windows)
        ]
        logger.debug(
            "Windows normalized | count=%s | timezone=%s",
            len(normalized),
            self._zone_name,
        )
        return normalized
