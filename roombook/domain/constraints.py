"""Domain-level validation rules for search and ranking configuration."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class SearchConfig:
    default_page_size: int
    max_page_size: int
    batch_size: int
    max_workers: int


@dataclass(frozen=True)
class FunnelConfig:
    pre_score_cap: float
    specialty_bonus: float
    usage_max_bonus: float
    reliability_max_bonus: float


def validate_search_config(config: SearchConfig) -> None:
    if config.max_page_size <= 0:
        raise ValueError("max_page_size must be > 0")
    if not 0 < config.default_page_size <= config.max_page_size:
        raise ValueError("default_page_size must be in (0, max_page_size]")
    if config.batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    if config.max_workers <= 0:
        raise ValueError("max_workers must be > 0")


def validate_funnel_config(config: FunnelConfig) -> None:
    for name in (
        "pre_score_cap",
        "specialty_bonus",
        "usage_max_bonus",
        "reliability_max_bonus",
    ):
        value = getattr(config, name)
        if math.isnan(value) or value < 0.0:
            raise ValueError(f"{name} must be >= 0")
