"""
Deterministic nudge rule packs.

Every pack implements `RulePack.evaluate(summary, signals)` and is a pure
function of the `ContextSummary` plus `RuleSignals`, the small set of extra
lookups (last tool completion, last journal entry, goal staleness...) that
`load_rule_signals` fetches once per generation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from context_integrator import ContextSummary
from db.models import NudgeKind, Surface, enum_values

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, None]
PayloadValue = Union[Scalar, List[Scalar]]

RECENT_ACTIVITY_WINDOW = timedelta(hours=2)
GOAL_CREATION_WINDOW_DAYS = 14


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def coerce_payload(data: Optional[Dict[str, Any]]) -> Dict[str, PayloadValue]:
    """Keep only string keys mapping to scalars or flat lists of scalars."""
    result: Dict[str, PayloadValue] = {}
    for key, value in (data or {}).items():
        if not isinstance(key, str):
            continue
        if _is_scalar(value):
            result[key] = value
        elif isinstance(value, (list, tuple)) and all(_is_scalar(item) for item in value):
            result[key] = list(value)
        else:
            logger.debug("Dropping non-scalar payload field %s", key)
    return result


@dataclass
class CtaAction:
    target: str
    data: Dict[str, PayloadValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.target = str(self.target or "").strip()
        self.data = coerce_payload(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "data": dict(self.data)}


@dataclass
class NudgeCandidate:
    kind: str
    target_surface: str
    title: str
    message: str
    priority: int
    source_rule: str
    explainability: str = ""
    cta_label: Optional[str] = None
    cta_action: Optional[CtaAction] = None
    context_snapshot: Dict[str, PayloadValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in enum_values(NudgeKind):
            raise ValueError(f"Unknown nudge kind '{self.kind}'")
        if self.target_surface not in enum_values(Surface):
            raise ValueError(f"Unknown nudge surface '{self.target_surface}'")
        self.priority = max(0, min(10, int(self.priority)))
        self.context_snapshot = coerce_payload(self.context_snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "target_surface": self.target_surface,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "source_rule": self.source_rule,
            "explainability": self.explainability,
            "cta_label": self.cta_label,
            "cta_action": self.cta_action.to_dict() if self.cta_action else None,
            "context_snapshot": dict(self.context_snapshot),
        }


@dataclass
class RuleSignals:
    now: datetime
    local_now: datetime
    last_tool_completion_at: Optional[datetime] = None
    last_journal_at: Optional[datetime] = None
    journal_count: int = 0
    stalest_goal_days: Optional[int] = None
    goals_created_recent: int = 0
    goals_completed_recent: int = 0

    def days_since(self, moment: Optional[datetime]) -> Optional[int]:
        if moment is None:
            return None
        return max(0, (self.now - moment).days)

    def within_recent_window(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.now - moment <= RECENT_ACTIVITY_WINDOW


async def load_rule_signals(
    client: Any, summary: ContextSummary, now: datetime
) -> RuleSignals:
    user_id = summary.user_id
    last_tool, last_journal, journal_count, goals, goal_stats = await asyncio.gather(
        client.get_last_tool_completion_at(user_id=user_id),
        client.get_last_journal_at(user_id=user_id),
        client.count_journal_entries(user_id=user_id),
        client.get_active_goals(user_id=user_id),
        client.get_goal_creation_stats(
            user_id=user_id, since=now - timedelta(days=GOAL_CREATION_WINDOW_DAYS)
        ),
    )
    stalest: Optional[int] = None
    for goal in goals:
        reference = goal.get("last_progress_at") or goal.get("created_at")
        if reference is None:
            continue
        days = max(0, (now - reference).days)
        stalest = days if stalest is None else max(stalest, days)
    return RuleSignals(
        now=now,
        local_now=now + timedelta(minutes=summary.profile.utc_offset_minutes),
        last_tool_completion_at=last_tool,
        last_journal_at=last_journal,
        journal_count=int(journal_count),
        stalest_goal_days=stalest,
        goals_created_recent=goal_stats["created"],
        goals_completed_recent=goal_stats["completed"],
    )


class RulePack:
    """A named, ordered group of deterministic rules."""

    name = "rule_pack"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        raise NotImplementedError

    @staticmethod
    def _make(
        summary: ContextSummary,
        *,
        kind: NudgeKind,
        surface: Surface,
        title: str,
        message: str,
        priority: int,
        rule: str,
        why: str,
        cta_label: Optional[str] = None,
        target: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> NudgeCandidate:
        return NudgeCandidate(
            kind=kind.value,
            target_surface=surface.value,
            title=title,
            message=message,
            priority=priority,
            source_rule=rule,
            explainability=why,
            cta_label=cta_label,
            cta_action=CtaAction(target=target, data=data or {}) if target else None,
            context_snapshot=summary.snapshot(),
        )


class CrossFeatureBridgePack(RulePack):
    name = "cross_feature_bridge"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        if signals.within_recent_window(signals.last_tool_completion_at):
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.CROSS_FEATURE_INSIGHT,
                    surface=Surface.JOURNAL,
                    title="Capture what shifted",
                    message="You just finished an exercise. A few lines in your journal can help it stick.",
                    priority=7,
                    rule="cross_feature_bridge_tool_to_journal",
                    why="A tool was completed in the last 2 hours.",
                    cta_label="Write a note",
                    target="journal/new",
                    data={"prompt_source": "tool_completion"},
                )
            )
        if summary.active_goal is not None and signals.within_recent_window(signals.last_journal_at):
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.GOAL_REMINDER,
                    surface=Surface.GOALS,
                    title="Connect it to your goal",
                    message=f"Your reflection could feed into \"{summary.active_goal.title}\". Add a small next step?",
                    priority=6,
                    rule="cross_feature_bridge_journal_to_goal",
                    why="A journal entry was written in the last 2 hours and a goal is active.",
                    cta_label="Add a step",
                    target="goals/detail",
                    data={"goal_id": summary.active_goal.id},
                )
            )
        return candidates


class RiskHygienePack(RulePack):
    name = "risk_hygiene"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        if summary.has_risk("low_mood_3d"):
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.TOOLS,
                    title="A gentle reset",
                    message="The last few days have felt heavy. A short grounding exercise might help.",
                    priority=8,
                    rule="risk_hygiene_low_mood",
                    why="Your last three mood check-ins averaged 2.5 or lower.",
                    cta_label="Try it",
                    target="tools/grounding",
                )
            )
        if summary.has_risk("no_journal_7d"):
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.JOURNAL_PROMPT,
                    surface=Surface.JOURNAL,
                    title="How has your week been?",
                    message="It's been a little while since you journaled. Two minutes is plenty.",
                    priority=5,
                    rule="risk_hygiene_no_journal_7d",
                    why="No journal entries in the past 7 days.",
                    cta_label="Start writing",
                    target="journal/new",
                )
            )
        if summary.has_risk("no_goal_progress_14d") and summary.active_goal is not None:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.GOAL_REMINDER,
                    surface=Surface.GOALS,
                    title="One small step",
                    message=f"\"{summary.active_goal.title}\" is still waiting. What's the smallest next action?",
                    priority=6,
                    rule="risk_hygiene_no_progress_14d",
                    why="No goal actions completed in 14 days while a goal is active.",
                    cta_label="Plan a step",
                    target="goals/detail",
                    data={"goal_id": summary.active_goal.id},
                )
            )
        return candidates


class MomentumCelebrationPack(RulePack):
    name = "momentum_celebration"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        momentum = summary.momentum
        if momentum.streak_days >= 5:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.CELEBRATION,
                    surface=Surface.HOME,
                    title=f"{momentum.streak_days} days in a row!",
                    message="You've shown up for yourself every day. That consistency matters.",
                    priority=9,
                    rule="momentum_celebration_streak",
                    why=f"Activity streak of {momentum.streak_days} days.",
                    data={"streak_days": momentum.streak_days},
                    target="dashboard/progress",
                )
            )
        goal = summary.active_goal
        if goal is not None and goal.progress >= 50:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.CELEBRATION,
                    surface=Surface.GOALS,
                    title="Halfway there",
                    message=f"\"{goal.title}\" is {int(goal.progress)}% done. Take a moment to notice that.",
                    priority=7,
                    rule="momentum_celebration_milestone",
                    why=f"Active goal progress is {goal.progress:.0f}%.",
                    target="goals/detail",
                    data={"goal_id": goal.id, "progress": goal.progress},
                )
            )
        if momentum.completion_rate >= 0.70:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.CELEBRATION,
                    surface=Surface.HOME,
                    title="You follow through",
                    message=f"You've completed {int(momentum.completion_rate * 100)}% of your planned actions.",
                    priority=6,
                    rule="momentum_celebration_completion_rate",
                    why="Action completion rate is at least 70%.",
                )
            )
        return candidates


class WellnessCheckpointPack(RulePack):
    name = "wellness_checkpoint"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        mood = summary.mood
        if mood.average is not None and mood.average < 3 and len(mood.recent_values) >= 5:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.HOME,
                    title="Checking in on you",
                    message="Your mood has been low for a while. Would talking it through help?",
                    priority=9,
                    rule="wellness_checkpoint_low_mood_pattern",
                    why=f"Average mood {mood.average:.1f} across {len(mood.recent_values)} check-ins.",
                    cta_label="Open chat",
                    target="chat",
                )
            )
        inactive_days = signals.days_since(summary.momentum.last_activity_at)
        if inactive_days is not None and inactive_days >= 3:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.HOME,
                    title="How are you doing?",
                    message="We haven't seen you for a few days. A quick check-in takes ten seconds.",
                    priority=6,
                    rule="wellness_checkpoint_inactive_days",
                    why=f"No activity for {inactive_days} days.",
                    cta_label="Check in",
                    target="dashboard/mood",
                )
            )
        if summary.momentum.streak_days >= 7 and mood.trend == "declining":
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.TOOLS,
                    title="Rest counts too",
                    message="You've been very consistent while your mood dipped. A restful exercise is still progress.",
                    priority=8,
                    rule="wellness_checkpoint_burnout_prevention",
                    why="Long streak combined with a declining mood trend.",
                    cta_label="Unwind",
                    target="tools/relaxation",
                )
            )
        local_now = signals.local_now
        if local_now.weekday() in (4, 5) and local_now.hour >= 18:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.JOURNAL,
                    title="Look back on your week",
                    message="What went well this week, and what would you like to carry forward?",
                    priority=4,
                    rule="wellness_checkpoint_weekend",
                    why="Weekend evening reflection prompt.",
                    cta_label="Reflect",
                    target="journal/new",
                    data={"prompt_source": "weekly_reflection"},
                )
            )
        return candidates


def population_variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((value - mean) ** 2 for value in values) / len(values)


class RiskMitigationPack(RulePack):
    name = "risk_mitigation"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        if signals.stalest_goal_days is not None and signals.stalest_goal_days >= 30:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.GOAL_REMINDER,
                    surface=Surface.GOALS,
                    title="Still the right goal?",
                    message="One of your goals hasn't moved in a month. Adjusting or pausing it is fine too.",
                    priority=7,
                    rule="risk_mitigation_abandoned_goal",
                    why=f"A goal has had no progress for {signals.stalest_goal_days} days.",
                    cta_label="Review goals",
                    target="goals",
                )
            )
        values = summary.mood.recent_values
        if len(values) >= 5 and population_variance(values) > 2.0:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.WELLNESS_CHECKPOINT,
                    surface=Surface.CHAT,
                    title="Ups and downs lately",
                    message="Your mood has been swinging. Want to talk through what's been going on?",
                    priority=8,
                    rule="risk_mitigation_mood_volatility",
                    why="Mood variance above 2.0 across recent check-ins.",
                    cta_label="Talk it through",
                    target="chat",
                )
            )
        if signals.goals_created_recent >= 3 and signals.goals_completed_recent == 0:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.GOAL_REMINDER,
                    surface=Surface.GOALS,
                    title="Focus on one",
                    message="You've set several new goals recently. Picking one to focus on can make it easier.",
                    priority=6,
                    rule="risk_mitigation_overcommitment",
                    why=f"{signals.goals_created_recent} goals created in 14 days, none completed.",
                    cta_label="Pick a focus",
                    target="goals",
                )
            )
        return candidates


class EngagementRecoveryPack(RulePack):
    name = "engagement_recovery"

    def evaluate(self, summary: ContextSummary, signals: RuleSignals) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        momentum = summary.momentum
        inactive_days = signals.days_since(momentum.last_activity_at)
        if inactive_days is not None and 7 <= inactive_days <= 14:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.ENGAGEMENT_RECOVERY,
                    surface=Surface.HOME,
                    title="Welcome back",
                    message="It's good to see you. Pick up wherever feels easiest.",
                    priority=7,
                    rule="engagement_recovery_lapsed_user",
                    why=f"Returning after {inactive_days} days away.",
                )
            )
        if (
            momentum.max_streak >= 5
            and momentum.streak_days == 0
            and inactive_days is not None
            and inactive_days >= 3
        ):
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.ENGAGEMENT_RECOVERY,
                    surface=Surface.HOME,
                    title="Start a fresh streak",
                    message=f"You once kept going for {momentum.max_streak} days. Today can be day one again.",
                    priority=8,
                    rule="engagement_recovery_restart_streak",
                    why=f"Previous best streak of {momentum.max_streak} days.",
                    data={"max_streak": momentum.max_streak},
                    target="dashboard/progress",
                )
            )
        journal_gap = signals.days_since(signals.last_journal_at)
        if signals.journal_count >= 3 and journal_gap is not None and journal_gap >= 10:
            candidates.append(
                self._make(
                    summary,
                    kind=NudgeKind.ENGAGEMENT_RECOVERY,
                    surface=Surface.JOURNAL,
                    title="Your journal misses you",
                    message="Journaling used to be part of your routine. One sentence is enough to restart.",
                    priority=5,
                    rule="engagement_recovery_journal",
                    why=f"{signals.journal_count} past entries, none in {journal_gap} days.",
                    cta_label="Write one line",
                    target="journal/new",
                )
            )
        return candidates


DEFAULT_RULE_PACKS: Sequence[RulePack] = (
    CrossFeatureBridgePack(),
    RiskHygienePack(),
    MomentumCelebrationPack(),
    WellnessCheckpointPack(),
    RiskMitigationPack(),
    EngagementRecoveryPack(),
)
