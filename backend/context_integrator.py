"""
Context integration for the nudge loop.

`ContextIntegrator.build_summary` runs seven independent lookups
concurrently and merges them into one `ContextSummary`. A lookup that
fails contributes its documented default; the summary itself never fails.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence

from db.models import _utc_now_naive

logger = logging.getLogger(__name__)

THEME_WINDOW_DAYS = 7
MOOD_WINDOW_DAYS = 7
CONNECTION_WINDOW_DAYS = 7
STREAK_LOOKBACK_BLOCKS = 30
TREND_THRESHOLD = 0.5
LOW_MOOD_THRESHOLD = 2.5
NO_JOURNAL_DAYS = 7
NO_PROGRESS_DAYS = 14
NO_MOOD_DAYS_SENTINEL = 999


@dataclass
class RiskFlag:
    type: str
    severity: str
    description: str


@dataclass
class Momentum:
    active_goals: int = 0
    streak_days: int = 0
    completion_rate: float = 0.0
    recent_completions: int = 0
    last_activity_at: Optional[datetime] = None
    max_streak: int = 0


@dataclass
class ActiveGoal:
    id: str
    title: str
    progress: float = 0.0
    category: Optional[str] = None
    days_since_progress: int = 0


@dataclass
class MoodTrend:
    average: Optional[float] = None
    trend: str = "unknown"
    days_since_last: int = NO_MOOD_DAYS_SENTINEL
    recent_values: List[int] = field(default_factory=list)


@dataclass
class PersonalizationProfile:
    empathy: float = 0.70
    formality: float = 0.30
    brevity: float = 0.50
    nudge_freq_daily: int = 2
    energy_bias: str = "medium"
    cadence_bias: str = "medium"
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    utc_offset_minutes: int = 0
    llm_nudges_enabled: bool = False
    flywheel_enabled: bool = True


@dataclass
class ContextSummary:
    user_id: str
    generated_at: datetime
    themes: List[str] = field(default_factory=list)
    risks: List[RiskFlag] = field(default_factory=list)
    momentum: Momentum = field(default_factory=Momentum)
    active_goal: Optional[ActiveGoal] = None
    mood: MoodTrend = field(default_factory=MoodTrend)
    profile: PersonalizationProfile = field(default_factory=PersonalizationProfile)
    connections: List[str] = field(default_factory=list)
    degrade_reasons: List[str] = field(default_factory=list)

    def has_risk(self, risk_type: str) -> bool:
        return any(risk.type == risk_type for risk in self.risks)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["generated_at"] = self.generated_at.isoformat()
        last_activity = self.momentum.last_activity_at
        payload["momentum"]["last_activity_at"] = (
            last_activity.isoformat() if last_activity is not None else None
        )
        return payload

    def snapshot(self) -> Dict[str, Any]:
        """Flat scalar/list view stored with each nudge and fed to the fallback prompt."""
        return {
            "themes": list(self.themes),
            "risks": [risk.type for risk in self.risks],
            "active_goal": self.active_goal.title if self.active_goal else None,
            "mood_trend": self.mood.trend,
            "mood_avg": self.mood.average,
            "streak_days": self.momentum.streak_days,
            "completion_rate": self.momentum.completion_rate,
        }


def distinct_dates(timestamps: Iterable[datetime]) -> List[date]:
    """Distinct calendar dates, newest first."""
    return sorted({item.date() for item in timestamps}, reverse=True)


def compute_streak(dates: Sequence[date], today: date) -> int:
    """Consecutive days with activity, walking back from today until the first gap."""
    present = set(dates)
    streak = 0
    cursor = today
    while cursor in present:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def compute_max_streak(dates: Sequence[date]) -> int:
    ordered = sorted(set(dates))
    best = 0
    run = 0
    previous: Optional[date] = None
    for current in ordered:
        run = run + 1 if previous is not None and current - previous == timedelta(days=1) else 1
        best = max(best, run)
        previous = current
    return best


def classify_mood_trend(values: Sequence[float], threshold: float = TREND_THRESHOLD) -> str:
    """
    Compare the mean of the older half with the mean of the newer half.

    `values` are chronological (oldest first). With an odd count the middle
    value belongs to the newer half.
    """
    if len(values) < 2:
        return "stable"
    mid = len(values) // 2
    older = values[:mid]
    newer = values[mid:]
    delta = sum(newer) / len(newer) - sum(older) / len(older)
    if delta > threshold:
        return "improving"
    if delta < -threshold:
        return "declining"
    return "stable"


def _days_between(later: datetime, earlier: Optional[datetime]) -> int:
    if earlier is None:
        return NO_MOOD_DAYS_SENTINEL
    return max(0, (later - earlier).days)


class ContextIntegrator:
    def __init__(self, *, client: Any) -> None:
        self.client = client

    async def build_summary(self, user_id: str, now: Optional[datetime] = None) -> ContextSummary:
        now_value = now or _utc_now_naive()
        summary = ContextSummary(user_id=user_id, generated_at=now_value)

        (
            summary.themes,
            summary.risks,
            summary.momentum,
            summary.active_goal,
            summary.mood,
            summary.profile,
            summary.connections,
        ) = await asyncio.gather(
            self._guarded("themes", self.compute_themes(user_id, now_value), [], summary),
            self._guarded("risks", self.compute_risks(user_id, now_value), [], summary),
            self._guarded("momentum", self.compute_momentum(user_id, now_value), Momentum(), summary),
            self._guarded("active_goal", self.compute_active_goal(user_id, now_value), None, summary),
            self._guarded("mood", self.compute_mood(user_id, now_value), MoodTrend(), summary),
            self._guarded(
                "profile", self.compute_profile(user_id), PersonalizationProfile(), summary
            ),
            self._guarded("connections", self.compute_connections(user_id, now_value), [], summary),
        )
        return summary

    @staticmethod
    async def _guarded(
        name: str, computation: Awaitable[Any], default: Any, summary: ContextSummary
    ) -> Any:
        try:
            return await computation
        except Exception as exc:
            logger.warning(
                "Context %s computation failed for %s; using default: %s",
                name,
                summary.user_id,
                exc,
            )
            summary.degrade_reasons.append(f"{name}_default")
            return default

    async def compute_themes(self, user_id: str, now: datetime) -> List[str]:
        blocks = await self.client.list_blocks_since(
            user_id=user_id, since=now - timedelta(days=THEME_WINDOW_DAYS)
        )
        counts: Counter = Counter()
        for block in blocks:
            counts.update(theme for theme in block.get("themes") or [] if theme)
        return [theme for theme, _ in counts.most_common(5)]

    async def compute_risks(self, user_id: str, now: datetime) -> List[RiskFlag]:
        risks: List[RiskFlag] = []

        recent_journals = await self.client.count_journal_entries(
            user_id=user_id, since=now - timedelta(days=NO_JOURNAL_DAYS)
        )
        if recent_journals == 0:
            risks.append(
                RiskFlag(
                    type="no_journal_7d",
                    severity="low",
                    description="No journal entries in the past 7 days",
                )
            )

        moods = await self.client.get_recent_moods(user_id=user_id, limit=3)
        if len(moods) >= 3:
            average = sum(item["mood_value"] for item in moods) / len(moods)
            if average <= LOW_MOOD_THRESHOLD:
                risks.append(
                    RiskFlag(
                        type="low_mood_3d",
                        severity="medium",
                        description=f"Average of the last 3 mood check-ins is {average:.1f}",
                    )
                )

        goals = await self.client.get_active_goals(user_id=user_id)
        if goals:
            stats = await self.client.get_action_stats(
                user_id=user_id, completed_since=now - timedelta(days=NO_PROGRESS_DAYS)
            )
            if stats["completed_recent"] == 0:
                risks.append(
                    RiskFlag(
                        type="no_goal_progress_14d",
                        severity="low",
                        description="No goal actions completed in the past 14 days",
                    )
                )
        return risks

    async def compute_momentum(self, user_id: str, now: datetime) -> Momentum:
        goals = await self.client.get_active_goals(user_id=user_id)
        stats = await self.client.get_action_stats(
            user_id=user_id, completed_since=now - timedelta(days=7)
        )
        timestamps = await self.client.get_activity_dates(
            user_id=user_id, limit=STREAK_LOOKBACK_BLOCKS
        )
        dates = distinct_dates(timestamps)
        total = stats["total"]
        return Momentum(
            active_goals=len(goals),
            streak_days=compute_streak(dates, now.date()),
            completion_rate=round(stats["completed"] / total, 2) if total else 0.0,
            recent_completions=stats["completed_recent"],
            last_activity_at=max(timestamps) if timestamps else None,
            max_streak=compute_max_streak(dates),
        )

    async def compute_active_goal(self, user_id: str, now: datetime) -> Optional[ActiveGoal]:
        goals = await self.client.get_active_goals(user_id=user_id)
        if not goals:
            return None
        goal = goals[0]
        reference = goal.get("last_progress_at") or goal.get("created_at")
        return ActiveGoal(
            id=goal["id"],
            title=goal["title"],
            progress=float(goal.get("progress") or 0.0),
            category=goal.get("category"),
            days_since_progress=_days_between(now, reference) if reference else 0,
        )

    async def compute_mood(self, user_id: str, now: datetime) -> MoodTrend:
        moods = await self.client.get_recent_moods(user_id=user_id, limit=50)
        if not moods:
            return MoodTrend()
        window_start = now - timedelta(days=MOOD_WINDOW_DAYS)
        window = [item for item in moods if item["created_at"] >= window_start]
        chronological = [item["mood_value"] for item in reversed(window)]
        days_since_last = _days_between(now, moods[0]["created_at"])
        if not chronological:
            return MoodTrend(days_since_last=days_since_last)
        return MoodTrend(
            average=round(sum(chronological) / len(chronological), 2),
            trend=classify_mood_trend(chronological),
            days_since_last=days_since_last,
            recent_values=chronological[-7:],
        )

    async def compute_profile(self, user_id: str) -> PersonalizationProfile:
        row = await self.client.get_personalization_weights(user_id)
        if row is None:
            return PersonalizationProfile()
        return PersonalizationProfile(
            empathy=float(row["empathy"]),
            formality=float(row["formality"]),
            brevity=float(row["brevity"]),
            nudge_freq_daily=int(row["nudge_freq_daily"]),
            energy_bias=str(row["energy_bias"]),
            cadence_bias=str(row["cadence_bias"]),
            quiet_hours_start=row.get("quiet_hours_start"),
            quiet_hours_end=row.get("quiet_hours_end"),
            utc_offset_minutes=int(row.get("utc_offset_minutes") or 0),
            llm_nudges_enabled=bool(row.get("llm_nudges_enabled")),
            flywheel_enabled=bool(row.get("flywheel_enabled", True)),
        )

    async def compute_connections(self, user_id: str, now: datetime) -> List[str]:
        relations = await self.client.get_recent_relations(
            user_id=user_id, since=now - timedelta(days=CONNECTION_WINDOW_DAYS), limit=5
        )
        return [
            f"{item['source_feature']}↔{item['target_feature']}:{item['relation_type']}"
            for item in relations
        ]
