"""Paginated, recurrence-aware availability search."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from roombook.domain.constraints import SearchConfig, validate_search_config
from roombook.domain.models import (
    NormalizedWindow,
    RequestedWindow,
    Room,
    RoomFilters,
    SearchPage,
)
from roombook.repository.interfaces import RequesterProfileProvider, RoomRepository
from roombook.services.conflict_service import ConflictEvaluator
from roombook.services.time_window_service import TimeWindowNormalizer
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger


logger = get_logger(__name__)


class SearchValidationError(Exception):
    """Raised when pagination inputs are invalid."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilitySearchService:
    """Scans candidate rooms in id order and keeps the conflict-free ones.

    Each room's check is independent, so a batch of candidates is evaluated
    on a bounded thread pool; results are consumed in candidate order so the
    page is always in ascending room id order.
    """

    def __init__(
        self,
        room_repository: RoomRepository,
        profile_provider: Optional[RequesterProfileProvider] = None,
        evaluator: Optional[ConflictEvaluator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._rooms = room_repository
        self._profiles = profile_provider
        self._evaluator = evaluator or ConflictEvaluator(
            TimeWindowNormalizer(settings=self._settings)
        )
        self._clock = clock
        self._config = SearchConfig(
            default_page_size=self._settings.search_default_page_size,
            max_page_size=self._settings.search_max_page_size,
            batch_size=self._settings.search_batch_size,
            max_workers=self._settings.search_max_workers,
        )
        validate_search_config(self._config)

    @property
    def evaluator(self) -> ConflictEvaluator:
        return self._evaluator

    def _resolve_page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self._config.default_page_size
        if not 0 < page_size <= self._config.max_page_size:
            raise SearchValidationError(
                f"page_size must be between 1 and {self._config.max_page_size}"
            )
        return page_size

    def _requester_precondition(self, filters: RoomFilters) -> Optional[str]:
        if filters.requester_id is None:
            return None
        if self._profiles is None:
            return None
        profile = self._profiles.get_requester_profile(filters.requester_id)
        if profile is None:
            return f"requester {filters.requester_id} is unknown"
        if not profile.is_active:
            return f"requester {filters.requester_id} is inactive"
        return None

    def _room_is_free(
        self,
        room: Room,
        windows: Sequence[NormalizedWindow],
        as_of: datetime,
    ) -> bool:
        bookings = self._rooms.get_active_bookings(room.room_id, as_of)
        return not self._evaluator.find_conflict(windows, bookings).conflict

    def _evaluate_batch(
        self,
        batch: list[Room],
        windows: Sequence[NormalizedWindow],
        as_of: datetime,
    ) -> list[bool]:
        if self._config.max_workers == 1 or len(batch) == 1:
            return [self._room_is_free(room, windows, as_of) for room in batch]
        workers = min(self._config.max_workers, len(batch))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(
                executor.map(
                    lambda room: self._room_is_free(room, windows, as_of),
                    batch,
                )
            )

    def search(
        self,
        filters: RoomFilters,
        requested_windows: Sequence[RequestedWindow],
        cursor: Optional[int] = None,
        page_size: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> SearchPage:
        resolved_page_size = self._resolve_page_size(page_size)
        windows = self._evaluator.normalizer.normalize_windows(requested_windows)
        self._evaluator.validate_windows_disjoint(windows)

        precondition_failure = self._requester_precondition(filters)
        if precondition_failure is not None:
            logger.info("Availability search skipped | reason=%s", precondition_failure)
            return SearchPage(
                rooms=[],
                next_cursor=cursor,
                has_more=False,
                precondition_failure=precondition_failure,
            )

        reference_time = as_of or self._clock()
        accepted: list[Room] = []
        last_examined = cursor
        scan_cursor = cursor
        has_more = False
        batch_limit = max(self._config.batch_size, resolved_page_size)

        while True:
            batch = self._rooms.list_candidates(filters, scan_cursor, batch_limit)
            if not batch:
                break
            verdicts = self._evaluate_batch(batch, windows, reference_time)

            quota_hit_at: Optional[int] = None
            for position, (room, is_free) in enumerate(zip(batch, verdicts)):
                last_examined = room.room_id
                if is_free:
                    accepted.append(room)
                    if len(accepted) >= resolved_page_size:
                        quota_hit_at = position
                        break

            if quota_hit_at is not None:
                if quota_hit_at < len(batch) - 1:
                    has_more = True
                elif len(batch) == batch_limit:
                    has_more = bool(self._rooms.list_candidates(filters, last_examined, 1))
                break
            if len(batch) < batch_limit:
                break
            scan_cursor = batch[-1].room_id

        logger.info(
            "Availability search completed | accepted=%s | next_cursor=%s | has_more=%s",
            len(accepted),
            last_examined,
            has_more,
        )
        return SearchPage(
            rooms=accepted,
            next_cursor=last_examined,
            has_more=has_more,
        )