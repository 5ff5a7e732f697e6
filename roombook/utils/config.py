"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_path: Path
    sqlite_timeout_seconds: float
    log_level: str
    civil_timezone: str
    search_default_page_size: int
    search_max_page_size: int
    search_batch_size: int
    search_max_workers: int
    funnel_pre_score_cap: float
    funnel_recency_points_per_use: float
    funnel_recency_days: int
    funnel_specialty_bonus: float
    funnel_usage_max_bonus: float
    funnel_reliability_max_bonus: float


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; use `dataclasses.replace` for variants."""
    return Settings(
        app_name=_env_str("ROOMBOOK_APP_NAME", "Room Booking Core"),
        app_version=_env_str("ROOMBOOK_APP_VERSION", "1.0.0"),
        database_path=Path(_env_str("ROOMBOOK_DATABASE_PATH", "data/roombook.db")),
        sqlite_timeout_seconds=_env_float("ROOMBOOK_SQLITE_TIMEOUT_SECONDS", 5.0),
        log_level=_env_str("ROOMBOOK_LOG_LEVEL", "INFO"),
        civil_timezone=_env_str("ROOMBOOK_CIVIL_TIMEZONE", "America/Sao_Paulo"),
        search_default_page_size=_env_int("ROOMBOOK_SEARCH_DEFAULT_PAGE_SIZE", 10),
        search_max_page_size=_env_int("ROOMBOOK_SEARCH_MAX_PAGE_SIZE", 100),
        search_batch_size=_env_int("ROOMBOOK_SEARCH_BATCH_SIZE", 25),
        search_max_workers=_env_int("ROOMBOOK_SEARCH_MAX_WORKERS", 4),
        funnel_pre_score_cap=_env_float("ROOMBOOK_FUNNEL_PRE_SCORE_CAP", 30.0),
        funnel_recency_points_per_use=_env_float("ROOMBOOK_FUNNEL_RECENCY_POINTS_PER_USE", 5.0),
        funnel_recency_days=_env_int("ROOMBOOK_FUNNEL_RECENCY_DAYS", 30),
        funnel_specialty_bonus=_env_float("ROOMBOOK_FUNNEL_SPECIALTY_BONUS", 25.0),
        funnel_usage_max_bonus=_env_float("ROOMBOOK_FUNNEL_USAGE_MAX_BONUS", 20.0),
        funnel_reliability_max_bonus=_env_float("ROOMBOOK_FUNNEL_RELIABILITY_MAX_BONUS", 10.0),
    )
