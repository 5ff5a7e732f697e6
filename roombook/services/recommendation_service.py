"""Room ranking funnel built from independent scoring agents."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Protocol, Sequence

from roombook.domain.constraints import FunnelConfig, validate_funnel_config
from roombook.domain.models import AgentScore, RequesterProfile, Room, ScoreEntry, UsageStats
from roombook.repository.interfaces import RecentUsageProvider, StatsRepository
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger


logger = get_logger(__name__)

NEUTRAL = AgentScore(points=0.0)


class ScoringAgent(Protocol):
    name: str

    def score(
        self,
        room: Room,
        profile: RequesterProfile,
        stats: Optional[UsageStats],
    ) -> AgentScore:
        ...


class SpecialtyAffinityAgent:
    name = "specialty"

    def __init__(self, bonus: float = 25.0) -> None:
        self._bonus = bonus

    def score(
        self,
        room: Room,
        profile: RequesterProfile,
        stats: Optional[UsageStats],
    ) -> AgentScore:
        if room.specialty_id is None or profile.specialty_id is None:
            return NEUTRAL
        if room.specialty_id != profile.specialty_id:
            return NEUTRAL
        return AgentScore(points=self._bonus, reason="Matches your specialty")


class UsageRateAgent:
    """Scales linearly with historical utilization, capped at `max_bonus`."""

    name = "usage"

    def __init__(self, max_bonus: float = 20.0) -> None:
        self._max_bonus = max_bonus

    def score(
        self,
        room: Room,
        profile: RequesterProfile,
        stats: Optional[UsageStats],
    ) -> AgentScore:
        if stats is None or stats.usage_rate is None:
            return NEUTRAL
        if math.isnan(stats.usage_rate) or stats.usage_rate <= 0.0:
            return NEUTRAL
        points = min(self._max_bonus, stats.usage_rate * self._max_bonus)
        return AgentScore(points=points, reason="Good historical usage rate")


class ReliabilityAgent:
    name = "reliability"

    def __init__(self, max_bonus: float = 10.0) -> None:
        self._max_bonus = max_bonus

    def score(
        self,
        room: Room,
        profile: RequesterProfile,
        stats: Optional[UsageStats],
    ) -> AgentScore:
        if stats is None:
            return NEUTRAL
        if stats.cancellation_count == 0:
            return AgentScore(points=self._max_bonus, reason="No cancellation history")
        return AgentScore(points=max(0.0, self._max_bonus - stats.cancellation_count))


def build_default_agents(settings: Optional[Settings] = None) -> list[ScoringAgent]:
    resolved = settings or get_settings()
    return [
        SpecialtyAffinityAgent(bonus=resolved.funnel_specialty_bonus),
        UsageRateAgent(max_bonus=resolved.funnel_usage_max_bonus),
        ReliabilityAgent(max_bonus=resolved.funnel_reliability_max_bonus),
    ]


def build_recency_pre_scores(
    recent_usage_counts: Mapping[int, int],
    points_per_use: float,
    cap: float,
) -> dict[int, float]:
    """Turn per-room recent booking counts into capped pre-scores."""
    return {
        room_id: min(cap, count * points_per_use)
        for room_id, count in recent_usage_counts.items()
        if count > 0
    }


def _format_points(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.1f}"


class RecommendationFunnel:
    """Pre-score plus the sum of every agent's positive contribution.

    Agents are injected in order; their reasons are reported in that order.
    Agents never see each other's output, so adding one never touches the
    aggregation here.
    """

    def __init__(
        self,
        agents: Optional[Sequence[ScoringAgent]] = None,
        settings: Optional[Settings] = None,
        pre_score_cap: Optional[float] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._agents = list(agents) if agents is not None else build_default_agents(self._settings)
        self._config = FunnelConfig(
            pre_score_cap=(
                pre_score_cap
                if pre_score_cap is not None
                else self._settings.funnel_pre_score_cap
            ),
            specialty_bonus=self._settings.funnel_specialty_bonus,
            usage_max_bonus=self._settings.funnel_usage_max_bonus,
            reliability_max_bonus=self._settings.funnel_reliability_max_bonus,
        )
        validate_funnel_config(self._config)

    @property
    def agent_names(self) -> list[str]:
        return [agent.name for agent in self._agents]

    def _score_room(
        self,
        room: Room,
        profile: RequesterProfile,
        stats: Optional[UsageStats],
        pre_score: float,
    ) -> ScoreEntry:
        total = 0.0
        reasons: list[str] = []

        if pre_score > 0.0 and not math.isnan(pre_score):
            bonus = min(pre_score, self._config.pre_score_cap)
            total += bonus
            reasons.append(f"Used recently by you (+{_format_points(bonus)})")

        for agent in self._agents:
            result = agent.score(room, profile, stats)
            if math.isnan(result.points) or result.points <= 0.0:
                continue
            total += result.points
            if result.reason:
                reasons.append(result.reason)

        return ScoreEntry(room=room, score=total, reasons=reasons)

    def rank(
        self,
        candidate_rooms: Sequence[Room],
        requester_profile: RequesterProfile,
        usage_stats_by_room: Mapping[int, UsageStats],
        recency_pre_scores: Optional[Mapping[int, float]] = None,
    ) -> list[ScoreEntry]:
        """Score every candidate and sort descending; ties keep input order."""
        pre_scores = recency_pre_scores or {}
        entries = [
            self._score_room(
                room,
                requester_profile,
                usage_stats_by_room.get(room.room_id),
                float(pre_scores.get(room.room_id, 0.0)),
            )
            for room in candidate_rooms
        ]
        ranked = sorted(entries, key=lambda entry: entry.score, reverse=True)
        logger.debug(
            "Candidates ranked | requester_id=%s | candidates=%s | agents=%s",
            requester_profile.requester_id,
            len(ranked),
            self.agent_names,
        )
        return ranked


class CandidateRankingService:
    """Loads per-room stats and recency pre-scores, then runs the funnel."""

    def __init__(
        self,
        stats_repository: StatsRepository,
        recent_usage: Optional[RecentUsageProvider] = None,
        funnel: Optional[RecommendationFunnel] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings or get_settings()
        self._stats = stats_repository
        self._recent_usage = recent_usage
        self._funnel = funnel or RecommendationFunnel(settings=self._settings)
        self._clock = clock

    def recency_pre_scores(self, requester_id: int) -> dict[int, float]:
        if self._recent_usage is None:
            return {}
        now = self._clock()
        since = now - timedelta(days=self._settings.funnel_recency_days)
        counts = self._recent_usage.count_recent_bookings_by_room(requester_id, since, now)
        return build_recency_pre_scores(
            counts,
            points_per_use=self._settings.funnel_recency_points_per_use,
            cap=self._settings.funnel_pre_score_cap,
        )

    def rank_candidates(
        self,
        candidate_rooms: Sequence[Room],
        requester_profile: RequesterProfile,
    ) -> list[ScoreEntry]:
        stats_by_room: dict[int, UsageStats] = {}
        for room in candidate_rooms:
            stats = self._stats.get_usage_stats(room.room_id)
            if stats is not None:
                stats_by_room[room.room_id] = stats
        return self._funnel.rank(
            candidate_rooms,
            requester_profile,
            stats_by_room,
            self.recency_pre_scores(requester_profile.requester_id),
        )
