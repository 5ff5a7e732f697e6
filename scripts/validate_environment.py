#!/usr/bin/env python3
"""Validate local room booking environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from roombook.domain.models import RequestedWindow, RoomFilters
from roombook.repository.data_repository import DataRepository
from roombook.services.availability_service import AvailabilitySearchService
from roombook.services.booking_service import BookingService
from roombook.services.time_window_service import TimeWindowNormalizer
from roombook.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="roombook-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = ["fastapi", "uvicorn", "pydantic", "httpx", "pytest"]
    import_errors: list[str] = []
    for module_name in package_specs:
        try:
            importlib.import_module(module_name)
        except ImportError as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        base_settings = get_settings()
        validation_settings = replace(
            base_settings,
            database_path=Path(temp_dir) / "roombook_validation.db",
        )

        # CHECK 3: Civil timezone resolution
        try:
            normalizer = TimeWindowNormalizer(settings=validation_settings)
            ok, line = _print_result("Civil timezone", True, f": {normalizer.zone_name}")
        except Exception as exc:
            ok, line = _print_result("Civil timezone", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Database initialization
        repository = DataRepository(validation_settings)
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Search then book on a scratch room
        try:
            room_id = repository.create_room("Validation room", "Office", None, "Block V")
            target_day = (datetime.now(timezone.utc) + timedelta(days=7)).date().isoformat()
            window = RequestedWindow(date=target_day, start_time="09:00", end_time="10:00")
            search_service = AvailabilitySearchService(
                room_repository=repository,
                profile_provider=repository,
                settings=validation_settings,
            )
            page = search_service.search(RoomFilters(), [window], page_size=1)
            if [room.room_id for room in page.rooms] != [room_id]:
                raise RuntimeError("scratch room not reported as available")
            booking_service = BookingService(repository=repository, settings=validation_settings)
            first = booking_service.book(room_id=room_id, windows=[window])
            second = booking_service.book(room_id=room_id, windows=[window])
            if not first.booked or second.booked:
                raise RuntimeError("double booking was not rejected")
            ok, line = _print_result("Search and booking flow", True)
        except Exception as exc:
            ok, line = _print_result("Search and booking flow", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Room Booking Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
