from datetime import datetime, timedelta

import pytest

from context_integrator import ActiveGoal, ContextSummary, Momentum, MoodTrend, RiskFlag
from nudge_rules import (
    CrossFeatureBridgePack,
    CtaAction,
    EngagementRecoveryPack,
    MomentumCelebrationPack,
    NudgeCandidate,
    RiskHygienePack,
    RiskMitigationPack,
    RuleSignals,
    WellnessCheckpointPack,
    coerce_payload,
    load_rule_signals,
    population_variance,
)

# A Wednesday, well outside the weekend reflection window.
WEDNESDAY_NOON = datetime(2026, 3, 11, 12, 0)


def _summary(**overrides) -> ContextSummary:
    summary = ContextSummary(user_id="user-a", generated_at=WEDNESDAY_NOON)
    for key, value in overrides.items():
        setattr(summary, key, value)
    return summary


def _signals(now: datetime = WEDNESDAY_NOON, **overrides) -> RuleSignals:
    return RuleSignals(now=now, local_now=overrides.pop("local_now", now), **overrides)


def _rules(candidates):
    return [candidate.source_rule for candidate in candidates]


def _goal(**overrides) -> ActiveGoal:
    values = {"id": "goal-1", "title": "Run a 5k", "progress": 20.0}
    values.update(overrides)
    return ActiveGoal(**values)


def test_candidate_validates_kind_surface_and_priority() -> None:
    candidate = NudgeCandidate(
        kind="celebration",
        target_surface="home",
        title="t",
        message="m",
        priority=42,
        source_rule="r",
        context_snapshot={"themes": ["sleep"], "nested": {"a": 1}, "score": 0.5},
    )

    assert candidate.priority == 10
    assert candidate.context_snapshot == {"themes": ["sleep"], "score": 0.5}
    with pytest.raises(ValueError):
        NudgeCandidate(
            kind="spam", target_surface="home", title="t", message="m", priority=1, source_rule="r"
        )
    with pytest.raises(ValueError):
        NudgeCandidate(
            kind="celebration", target_surface="inbox", title="t", message="m", priority=1, source_rule="r"
        )


def test_cta_payload_keeps_only_scalars() -> None:
    action = CtaAction(target=" goals/detail ", data={"goal_id": "g1", "tags": ("a", 1), "obj": object()})

    assert action.to_dict() == {"target": "goals/detail", "data": {"goal_id": "g1", "tags": ["a", 1]}}
    assert coerce_payload(None) == {}


def test_cross_feature_bridge_uses_recent_window() -> None:
    pack = CrossFeatureBridgePack()
    summary = _summary(active_goal=_goal())

    recent = pack.evaluate(
        summary,
        _signals(
            last_tool_completion_at=WEDNESDAY_NOON - timedelta(minutes=30),
            last_journal_at=WEDNESDAY_NOON - timedelta(hours=1),
        ),
    )
    stale = pack.evaluate(
        summary,
        _signals(
            last_tool_completion_at=WEDNESDAY_NOON - timedelta(hours=3),
            last_journal_at=WEDNESDAY_NOON - timedelta(hours=3),
        ),
    )

    assert _rules(recent) == [
        "cross_feature_bridge_tool_to_journal",
        "cross_feature_bridge_journal_to_goal",
    ]
    assert recent[0].target_surface == "journal"
    assert recent[1].cta_action.data == {"goal_id": "goal-1"}
    assert stale == []


def test_risk_hygiene_maps_each_risk() -> None:
    summary = _summary(
        active_goal=_goal(),
        risks=[
            RiskFlag("low_mood_3d", "medium", "low"),
            RiskFlag("no_journal_7d", "low", "quiet"),
            RiskFlag("no_goal_progress_14d", "low", "stuck"),
        ],
    )

    candidates = RiskHygienePack().evaluate(summary, _signals())

    assert _rules(candidates) == [
        "risk_hygiene_low_mood",
        "risk_hygiene_no_journal_7d",
        "risk_hygiene_no_progress_14d",
    ]
    assert candidates[0].kind == "wellness_checkpoint"
    assert candidates[0].context_snapshot["risks"] == [
        "low_mood_3d",
        "no_journal_7d",
        "no_goal_progress_14d",
    ]


def test_momentum_celebrations() -> None:
    summary = _summary(
        momentum=Momentum(streak_days=5, completion_rate=0.75),
        active_goal=_goal(progress=55.0),
    )

    candidates = MomentumCelebrationPack().evaluate(summary, _signals())

    assert _rules(candidates) == [
        "momentum_celebration_streak",
        "momentum_celebration_milestone",
        "momentum_celebration_completion_rate",
    ]
    assert candidates[0].priority == 9
    assert candidates[0].title == "5 days in a row!"
    assert MomentumCelebrationPack().evaluate(_summary(momentum=Momentum(streak_days=4)), _signals()) == []


def test_wellness_checkpoints() -> None:
    summary = _summary(
        mood=MoodTrend(average=2.4, trend="declining", days_since_last=0, recent_values=[3, 3, 2, 2, 2]),
        momentum=Momentum(streak_days=7, last_activity_at=WEDNESDAY_NOON - timedelta(days=4)),
    )

    candidates = WellnessCheckpointPack().evaluate(summary, _signals())

    assert _rules(candidates) == [
        "wellness_checkpoint_low_mood_pattern",
        "wellness_checkpoint_inactive_days",
        "wellness_checkpoint_burnout_prevention",
    ]
    assert candidates[2].target_surface == "tools"


def test_weekend_reflection_uses_local_time() -> None:
    friday_evening_utc = datetime(2026, 3, 13, 17, 30)
    pack = WellnessCheckpointPack()

    utc_user = pack.evaluate(_summary(), _signals(friday_evening_utc))
    ahead_user = pack.evaluate(
        _summary(), _signals(friday_evening_utc, local_now=friday_evening_utc + timedelta(hours=2))
    )

    assert utc_user == []
    assert _rules(ahead_user) == ["wellness_checkpoint_weekend"]


def test_risk_mitigation() -> None:
    summary = _summary(mood=MoodTrend(average=3.4, trend="stable", recent_values=[1, 6, 1, 6, 3]))
    signals = _signals(stalest_goal_days=31, goals_created_recent=3, goals_completed_recent=0)

    candidates = RiskMitigationPack().evaluate(summary, signals)

    assert _rules(candidates) == [
        "risk_mitigation_abandoned_goal",
        "risk_mitigation_mood_volatility",
        "risk_mitigation_overcommitment",
    ]
    assert candidates[1].target_surface == "chat"
    assert population_variance([2, 2, 2]) == 0.0
    assert population_variance([]) == 0.0


def test_engagement_recovery() -> None:
    summary = _summary(
        momentum=Momentum(streak_days=0, max_streak=6, last_activity_at=WEDNESDAY_NOON - timedelta(days=8))
    )
    signals = _signals(journal_count=4, last_journal_at=WEDNESDAY_NOON - timedelta(days=12))

    candidates = EngagementRecoveryPack().evaluate(summary, signals)

    assert _rules(candidates) == [
        "engagement_recovery_lapsed_user",
        "engagement_recovery_restart_streak",
        "engagement_recovery_journal",
    ]
    assert candidates[1].cta_action.data == {"max_streak": 6}

    long_gone = _summary(momentum=Momentum(last_activity_at=WEDNESDAY_NOON - timedelta(days=20)))
    assert "engagement_recovery_lapsed_user" not in _rules(
        EngagementRecoveryPack().evaluate(long_gone, _signals())
    )


@pytest.mark.asyncio
async def test_load_rule_signals_reads_store(make_stack) -> None:
    stack = await make_stack()
    client = stack.client
    now = datetime(2026, 3, 11, 12, 0)
    await client.record_tool_completion(
        user_id="user-a", tool_name="box_breathing", completed_at=now - timedelta(minutes=10)
    )
    await client.add_journal_entry(user_id="user-a", content="a", created_at=now - timedelta(days=2))
    await client.add_journal_entry(user_id="user-a", content="b", created_at=now - timedelta(days=1))
    await client.add_goal(user_id="user-a", title="Old", created_at=now - timedelta(days=40))
    await client.add_goal(user_id="user-a", title="New", created_at=now - timedelta(days=2))
    await client.upsert_personalization_weights("user-a", utc_offset_minutes=-300)
    summary = await stack.services.integrator.build_summary("user-a", now=now)

    signals = await load_rule_signals(client, summary, now)

    assert signals.last_tool_completion_at == now - timedelta(minutes=10)
    assert signals.last_journal_at == now - timedelta(days=1)
    assert signals.journal_count == 2
    assert signals.stalest_goal_days == 40
    assert signals.goals_created_recent == 1
    assert signals.goals_completed_recent == 0
    assert signals.local_now == now - timedelta(hours=5)
