"""
Master agent: turns "user performed an action" events into persisted nudges
and closes the feedback loop from nudge interactions back into the user's
personalization weights.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import FeatureConfig
from context_integrator import ContextIntegrator, PersonalizationProfile
from db.models import Surface, _utc_now_naive, enum_values
from nudge_engine import NudgeEngine

logger = logging.getLogger(__name__)

SURFACE_NUDGE_LIMIT = 2
FEEDBACK_WINDOW_DAYS = 30
HIGH_ACCEPT_RATE = 0.70
LOW_ACCEPT_RATE = 0.30
MAX_DAILY_NUDGES = 10
INSIGHT_PERIODS = {"7d": 7, "30d": 30}
QUOTA_RETENTION = timedelta(days=1)


class MasterAgent:
    def __init__(
        self,
        *,
        client: Any,
        integrator: ContextIntegrator,
        engine: NudgeEngine,
        config: FeatureConfig,
        sink: Any,
        tracer: Any,
    ) -> None:
        self.client = client
        self.integrator = integrator
        self.engine = engine
        self.config = config
        self.sink = sink
        self.tracer = tracer

    # =========================================================================
    # Event loop
    # =========================================================================

    async def log_event(
        self,
        user_id: str,
        event_type: str,
        *,
        source_feature: Optional[str] = None,
        source_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Persist the event and process it in the background."""
        event_id = await self.client.log_agent_event(
            user_id=user_id,
            event_type=event_type,
            source_feature=source_feature,
            source_id=source_id,
            data=data,
        )
        self.sink.submit(self.process_event(event_id), label="process_event")
        return event_id

    async def process_event(
        self, event_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now_value = now or _utc_now_naive()
        event = await self.client.get_agent_event(event_id)
        if event is None:
            return {"event_id": event_id, "skipped": "missing"}
        if event["processed_at"] is not None:
            return {"event_id": event_id, "skipped": "already_processed"}

        user_id = event["user_id"]
        if not await self.flywheel_enabled(user_id):
            await self.client.mark_agent_event_processed(event_id, now=now_value)
            return {"event_id": event_id, "skipped": "flywheel_disabled"}

        summary = await self.integrator.build_summary(user_id, now=now_value)
        nudges = await self.engine.generate(user_id, summary, now=now_value)
        nudge_ids = await self.engine.save(user_id, nudges, now=now_value)
        await self.client.mark_agent_event_processed(event_id, now=now_value)

        self.tracer.emit(
            "agent.event_processed",
            user_id=user_id,
            event_type=event["event_type"],
            nudges=len(nudge_ids),
            rules=[item.source_rule for item in nudges],
            degrade_reasons=list(summary.degrade_reasons),
        )
        logger.info(
            "Processed %s event %s for %s: %d nudges",
            event["event_type"],
            event_id,
            user_id,
            len(nudge_ids),
        )
        return {
            "event_id": event_id,
            "nudge_ids": nudge_ids,
            "rules": [item.source_rule for item in nudges],
        }

    async def flywheel_enabled(self, user_id: str) -> bool:
        weights = await self.client.get_personalization_weights(user_id)
        if weights is None:
            return PersonalizationProfile().flywheel_enabled
        return bool(weights.get("flywheel_enabled", True))

    # =========================================================================
    # Nudge interactions
    # =========================================================================

    async def get_nudges_for_surface(
        self, user_id: str, surface: str, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        if surface not in enum_values(Surface):
            raise ValueError(f"Unknown nudge surface '{surface}'")
        now_value = now or _utc_now_naive()
        nudges = await self.client.get_active_nudges(
            user_id=user_id, now=now_value, surface=surface, limit=SURFACE_NUDGE_LIMIT
        )
        unseen = [item["id"] for item in nudges if item["shown_at"] is None]
        if unseen:
            await self.client.mark_nudges_shown(unseen, now=now_value)
            for item in nudges:
                if item["id"] in unseen:
                    item["shown_at"] = now_value.isoformat()
        return nudges

    async def accept_nudge(self, user_id: str, nudge_id: str) -> bool:
        return await self._record_feedback(user_id, nudge_id, "accepted_at", "accepted")

    async def dismiss_nudge(self, user_id: str, nudge_id: str) -> bool:
        return await self._record_feedback(user_id, nudge_id, "dismissed_at", "dismissed")

    async def complete_nudge(self, user_id: str, nudge_id: str) -> bool:
        recorded = await self._record_feedback(user_id, nudge_id, "completed_at", "completed")
        if recorded:
            self.sink.submit(
                self.update_personalization(user_id), label="update_personalization"
            )
        return recorded

    async def _record_feedback(
        self, user_id: str, nudge_id: str, field_name: str, outcome: str
    ) -> bool:
        recorded = await self.client.set_nudge_timestamp(
            user_id=user_id, nudge_id=nudge_id, field=field_name, now=_utc_now_naive()
        )
        if recorded:
            self.tracer.emit(
                "nudges.feedback", user_id=user_id, nudge_id=nudge_id, outcome=outcome
            )
        return recorded

    async def update_personalization(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Nudge the daily budget up or down from the 30-day accept rate."""
        now_value = now or _utc_now_naive()
        counts = await self.client.get_nudge_feedback_counts(
            user_id=user_id, since=now_value - timedelta(days=FEEDBACK_WINDOW_DAYS)
        )
        weights = await self.client.get_personalization_weights(user_id)
        current = (
            int(weights["nudge_freq_daily"])
            if weights is not None
            else PersonalizationProfile().nudge_freq_daily
        )
        if counts["shown"] == 0:
            return {"user_id": user_id, "accept_rate": None, "nudge_freq_daily": current, "changed": False}

        accept_rate = counts["accepted"] / counts["shown"]
        updated = current
        if accept_rate > HIGH_ACCEPT_RATE:
            updated = min(MAX_DAILY_NUDGES, current + 1)
        elif accept_rate < LOW_ACCEPT_RATE:
            updated = max(0, current - 1)

        if updated != current:
            await self.client.upsert_personalization_weights(user_id, nudge_freq_daily=updated)
            logger.info(
                "Adjusted daily nudge budget for %s: %d -> %d (accept rate %.2f)",
                user_id,
                current,
                updated,
                accept_rate,
            )
        return {
            "user_id": user_id,
            "accept_rate": round(accept_rate, 2),
            "nudge_freq_daily": updated,
            "changed": updated != current,
        }

    # =========================================================================
    # Insight snapshots and maintenance
    # =========================================================================

    async def cache_insights(
        self, user_id: str, period: str = "7d", now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        if period not in INSIGHT_PERIODS:
            raise ValueError(f"Unsupported insights period '{period}'")
        now_value = now or _utc_now_naive()
        summary = await self.integrator.build_summary(user_id, now=now_value)
        feedback = await self.client.get_nudge_feedback_counts(
            user_id=user_id, since=now_value - timedelta(days=INSIGHT_PERIODS[period])
        )
        snapshot = summary.to_dict()
        snapshot["period"] = period
        snapshot["nudge_feedback"] = feedback
        await self.client.upsert_insights_snapshot(
            user_id=user_id, period=period, snapshot=snapshot
        )
        return snapshot

    async def cache_insights_for_all_users(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now_value = now or _utc_now_naive()
        users = await self.client.get_users_with_recent_blocks(
            since=now_value - timedelta(days=max(INSIGHT_PERIODS.values()))
        )
        written = 0
        failed = 0
        for user_id in users:
            for period in INSIGHT_PERIODS:
                try:
                    await self.cache_insights(user_id, period, now=now_value)
                    written += 1
                except Exception as exc:
                    failed += 1
                    logger.warning("Insight snapshot %s failed for %s: %s", period, user_id, exc)
        return {"users": len(users), "written": written, "failed": failed}

    async def sweep_expired_nudges(self, now: Optional[datetime] = None) -> int:
        removed = await self.client.delete_expired_nudges(now=now or _utc_now_naive())
        if removed:
            logger.info("Swept %d expired nudges", removed)
        return removed

    async def run_maintenance(self) -> Dict[str, Any]:
        now_value = _utc_now_naive()
        return {
            "expired_nudges_removed": await self.sweep_expired_nudges(now_value),
            "relation_quota_purged": await self.client.purge_relation_quota(
                before=now_value - QUOTA_RETENTION
            ),
        }
