from datetime import date, timedelta

import pytest

from context_integrator import (
    ContextIntegrator,
    PersonalizationProfile,
    classify_mood_trend,
    compute_max_streak,
    compute_streak,
    distinct_dates,
)
from db.models import _utc_now_naive


class _FlakyClient:
    """Delegates to the real store except for the named methods, which raise."""

    def __init__(self, inner, broken) -> None:
        self._inner = inner
        self._broken = set(broken)

    def __getattr__(self, name):
        if name in self._broken:
            async def _raise(*args, **kwargs):
                raise RuntimeError(f"{name} unavailable")

            return _raise
        return getattr(self._inner, name)


def test_classify_mood_trend_halves() -> None:
    assert classify_mood_trend([2, 2, 3, 2, 2]) == "stable"
    assert classify_mood_trend([1, 2, 4, 5]) == "improving"
    assert classify_mood_trend([5, 5, 3, 2]) == "declining"
    assert classify_mood_trend([4]) == "stable"
    assert classify_mood_trend([3, 3.5]) == "stable"
    assert classify_mood_trend([3.5, 3]) == "stable"
    assert classify_mood_trend([3, 3.6]) == "improving"
    assert classify_mood_trend([3.6, 3]) == "declining"


def test_streaks_walk_back_from_today() -> None:
    today = date(2026, 3, 10)
    dates = [date(2026, 3, 10), date(2026, 3, 9), date(2026, 3, 8), date(2026, 3, 5), date(2026, 3, 4)]

    assert compute_streak(dates, today) == 3
    assert compute_streak(dates, date(2026, 3, 11)) == 0
    assert compute_max_streak(dates) == 3
    assert compute_max_streak([]) == 0


def test_distinct_dates_are_newest_first() -> None:
    now = _utc_now_naive().replace(hour=12)
    stamps = [now, now - timedelta(hours=1), now - timedelta(days=2)]

    assert distinct_dates(stamps) == [now.date(), (now - timedelta(days=2)).date()]


@pytest.mark.asyncio
async def test_summary_for_a_new_user_uses_defaults(make_stack) -> None:
    stack = await make_stack()

    summary = await stack.services.integrator.build_summary("user-new")

    assert summary.themes == []
    assert [risk.type for risk in summary.risks] == ["no_journal_7d"]
    assert summary.active_goal is None
    assert summary.mood.trend == "unknown"
    assert summary.mood.days_since_last == 999
    assert summary.profile == PersonalizationProfile()
    assert summary.degrade_reasons == []


@pytest.mark.asyncio
async def test_low_mood_goal_and_momentum_signals(make_stack) -> None:
    stack = await make_stack()
    client = stack.client
    now = _utc_now_naive()
    for days_ago, value in zip([5, 4, 3, 2, 1], [2, 2, 3, 2, 2]):
        await client.add_mood_checkin(
            user_id="user-a", mood_value=value, created_at=now - timedelta(days=days_ago)
        )
    goal_id = await client.add_goal(
        user_id="user-a",
        title="Run a 5k",
        category="health",
        progress=40,
        created_at=now - timedelta(days=30),
        last_progress_at=now - timedelta(days=20),
    )
    await client.add_weekly_action(
        user_id="user-a",
        goal_id=goal_id,
        title="Run twice",
        completed=True,
        completed_at=now - timedelta(days=20),
    )
    await client.add_weekly_action(user_id="user-a", goal_id=goal_id, title="Stretch")
    await client.add_journal_entry(user_id="user-a", content="ok", created_at=now - timedelta(days=1))

    summary = await stack.services.integrator.build_summary("user-a", now=now)

    risks = {risk.type: risk for risk in summary.risks}
    assert set(risks) == {"low_mood_3d", "no_goal_progress_14d"}
    assert risks["low_mood_3d"].severity == "medium"
    assert summary.mood.trend == "stable"
    assert summary.mood.average == 2.2
    assert summary.mood.days_since_last == 1
    assert summary.mood.recent_values == [2, 2, 3, 2, 2]
    assert summary.active_goal.title == "Run a 5k"
    assert summary.active_goal.days_since_progress == 20
    assert summary.momentum.active_goals == 1
    assert summary.momentum.completion_rate == 0.5
    assert summary.momentum.recent_completions == 0

    snapshot = summary.snapshot()
    assert snapshot["active_goal"] == "Run a 5k"
    assert snapshot["risks"] == [risk.type for risk in summary.risks]


@pytest.mark.asyncio
async def test_themes_streak_and_connections_come_from_memory(make_stack) -> None:
    stack = await make_stack()
    memory = stack.services.memory
    journal = await memory.ingest_minimal(
        user_id="user-a", block_type="journal_entry", source_feature="journal", content="Slept badly"
    )
    chat = await memory.ingest_minimal(
        user_id="user-a", block_type="message", source_feature="chat", content="Need a plan for sleep"
    )
    for block in (journal, chat):
        await memory.enrich_and_embed_block(block["id"])
    await stack.client.create_relation(
        user_id="user-a",
        source_block_id=chat["id"],
        target_block_id=journal["id"],
        relation_type="addresses",
    )

    summary = await stack.services.integrator.build_summary("user-a")

    assert summary.themes == ["work stress", "sleep"]
    assert summary.momentum.streak_days == 1
    assert summary.momentum.max_streak == 1
    assert summary.momentum.last_activity_at is not None
    assert summary.connections == ["chat↔journal:addresses"]
    assert summary.to_dict()["momentum"]["last_activity_at"].startswith(str(_utc_now_naive().year))


@pytest.mark.asyncio
async def test_profile_reflects_stored_weights(make_stack) -> None:
    stack = await make_stack()
    await stack.client.upsert_personalization_weights(
        "user-a", nudge_freq_daily=4, quiet_hours_start=22, quiet_hours_end=7, utc_offset_minutes=120
    )

    summary = await stack.services.integrator.build_summary("user-a")

    assert summary.profile.nudge_freq_daily == 4
    assert summary.profile.quiet_hours_start == 22
    assert summary.profile.quiet_hours_end == 7
    assert summary.profile.utc_offset_minutes == 120
    assert summary.profile.flywheel_enabled is True


@pytest.mark.asyncio
async def test_failing_lookups_fall_back_to_defaults(make_stack) -> None:
    stack = await make_stack()
    await stack.client.add_goal(user_id="user-a", title="Read more")
    integrator = ContextIntegrator(
        client=_FlakyClient(stack.client, {"get_recent_moods", "get_personalization_weights"})
    )

    summary = await integrator.build_summary("user-a")

    assert summary.mood.trend == "unknown"
    assert summary.risks == []
    assert summary.profile == PersonalizationProfile()
    assert summary.active_goal.title == "Read more"
    assert sorted(summary.degrade_reasons) == ["mood_default", "profile_default", "risks_default"]
