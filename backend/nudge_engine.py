"""
Nudge decision pipeline.

    rules -> guarded fallback -> surface filter -> dedup by kind -> cadence -> sort

Cadence is the last gate and runs on the deduplicated, ranked list, so a
tight daily budget always keeps the highest-priority nudge.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import FeatureConfig
from context_integrator import ContextSummary, PersonalizationProfile
from db.models import NudgeKind, Surface, _utc_now_naive, enum_values
from llm_client import parse_json_object
from nudge_rules import (
    DEFAULT_RULE_PACKS,
    CtaAction,
    NudgeCandidate,
    RulePack,
    RuleSignals,
    load_rule_signals,
)
from prompts import nudge_prompt

logger = logging.getLogger(__name__)

LLM_FALLBACK_RULE = "llm-fallback"
LLM_FALLBACK_PRIORITY = 4
_TITLE_MAX = 40
_MESSAGE_MAX = 150
_CTA_LABEL_MAX = 20


def deduplicate_by_kind(candidates: Iterable[NudgeCandidate]) -> List[NudgeCandidate]:
    """Keep the highest-priority candidate per kind; earlier candidates win ties."""
    best: Dict[str, NudgeCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.kind)
        if current is None or candidate.priority > current.priority:
            best[candidate.kind] = candidate
    return sort_by_priority(best.values())


def sort_by_priority(candidates: Iterable[NudgeCandidate]) -> List[NudgeCandidate]:
    return sorted(candidates, key=lambda item: item.priority, reverse=True)


def local_time(profile: PersonalizationProfile, now: datetime) -> datetime:
    return now + timedelta(minutes=profile.utc_offset_minutes)


def is_quiet_hours(profile: PersonalizationProfile, now: datetime) -> bool:
    """Quiet hours are [start, end) in the user's local clock and may wrap midnight."""
    start = profile.quiet_hours_start
    end = profile.quiet_hours_end
    if start is None or end is None or start == end:
        return False
    hour = local_time(profile, now).hour
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def local_day_start(profile: PersonalizationProfile, now: datetime) -> datetime:
    """UTC instant of the user's most recent local midnight."""
    offset = timedelta(minutes=profile.utc_offset_minutes)
    local_midnight = (now + offset).replace(hour=0, minute=0, second=0, microsecond=0)
    return local_midnight - offset


def context_is_rich(context: ContextSummary) -> bool:
    return (
        len(context.themes) >= 2
        or context.active_goal is not None
        or len(context.mood.recent_values) >= 3
    )


class NudgeEngine:
    def __init__(
        self,
        *,
        client: Any,
        completion: Any,
        config: FeatureConfig,
        tracer: Any,
        rule_packs: Optional[Sequence[RulePack]] = None,
    ) -> None:
        self.client = client
        self.completion = completion
        self.config = config
        self.tracer = tracer
        self.rule_packs: Sequence[RulePack] = (
            tuple(rule_packs) if rule_packs is not None else DEFAULT_RULE_PACKS
        )

    async def generate(
        self,
        user_id: str,
        context: ContextSummary,
        target_surface: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        signals: Optional[RuleSignals] = None,
    ) -> List[NudgeCandidate]:
        if target_surface is not None and target_surface not in enum_values(Surface):
            raise ValueError(f"Unknown nudge surface '{target_surface}'")
        now_value = now or _utc_now_naive()
        if signals is None:
            signals = await load_rule_signals(self.client, context, now_value)

        candidates = self.evaluate_rules(context, signals)
        used_fallback = False
        if not candidates and self.fallback_allowed(context):
            fallback = await self._llm_fallback(user_id, context)
            if fallback is not None:
                candidates = [fallback]
                used_fallback = True

        if target_surface is not None:
            candidates = [item for item in candidates if item.target_surface == target_surface]
        candidates = deduplicate_by_kind(candidates)
        candidates = await self._apply_cadence(user_id, context.profile, candidates, now_value)
        result = sort_by_priority(candidates)

        self.tracer.emit(
            "nudges.generated",
            user_id=user_id,
            count=len(result),
            rules=[item.source_rule for item in result],
            used_fallback=used_fallback,
            target_surface=target_surface,
        )
        return result

    def evaluate_rules(
        self, context: ContextSummary, signals: RuleSignals
    ) -> List[NudgeCandidate]:
        candidates: List[NudgeCandidate] = []
        for pack in self.rule_packs:
            try:
                candidates.extend(pack.evaluate(context, signals))
            except Exception as exc:
                logger.warning("Rule pack %s failed for %s: %s", pack.name, context.user_id, exc)
        return candidates

    def fallback_allowed(self, context: ContextSummary) -> bool:
        return (
            self.config.llm_nudges_enabled
            and context.profile.llm_nudges_enabled
            and context.profile.nudge_freq_daily > 0
            and context_is_rich(context)
        )

    async def _apply_cadence(
        self,
        user_id: str,
        profile: PersonalizationProfile,
        candidates: List[NudgeCandidate],
        now: datetime,
    ) -> List[NudgeCandidate]:
        if not candidates:
            return []
        if is_quiet_hours(profile, now):
            logger.info("Quiet hours for %s; suppressing %d nudges", user_id, len(candidates))
            return []
        shown_today = await self.client.count_nudges_shown_since(
            user_id=user_id, since=local_day_start(profile, now)
        )
        remaining = profile.nudge_freq_daily - shown_today
        if remaining <= 0:
            return []
        return candidates[:remaining]

    async def _llm_fallback(
        self, user_id: str, context: ContextSummary
    ) -> Optional[NudgeCandidate]:
        try:
            blocks = await self.client.get_top_relevance_blocks(user_id=user_id, limit=3)
            snippets = [
                (block.get("summary") or block.get("content") or "")[:200] for block in blocks
            ]
            system_prompt, user_prompt = nudge_prompt(context.snapshot(), snippets)
            parsed = parse_json_object(await self.completion.complete(system_prompt, user_prompt))
        except Exception as exc:
            logger.warning("LLM fallback nudge failed for %s: %s", user_id, exc)
            return None
        if parsed is None:
            logger.warning("LLM fallback nudge for %s was not a JSON object", user_id)
            return None

        kind = str(parsed.get("kind") or "").strip()
        surface = str(parsed.get("target_surface") or "").strip()
        title = str(parsed.get("title") or "").strip()[:_TITLE_MAX]
        message = str(parsed.get("message") or "").strip()[:_MESSAGE_MAX]
        if kind not in enum_values(NudgeKind) or surface not in enum_values(Surface):
            logger.warning("LLM fallback nudge for %s had invalid kind/surface", user_id)
            return None
        if not title or not message:
            return None

        cta_action = None
        raw_action = parsed.get("cta_action")
        if isinstance(raw_action, dict) and isinstance(raw_action.get("target"), str):
            data = raw_action.get("data")
            cta_action = CtaAction(
                target=raw_action["target"], data=data if isinstance(data, dict) else {}
            )
        cta_label = parsed.get("cta_label")
        return NudgeCandidate(
            kind=kind,
            target_surface=surface,
            title=title,
            message=message,
            priority=LLM_FALLBACK_PRIORITY,
            source_rule=LLM_FALLBACK_RULE,
            explainability="Suggested from your recent memories because no rule applied.",
            cta_label=cta_label.strip()[:_CTA_LABEL_MAX] if isinstance(cta_label, str) else None,
            cta_action=cta_action,
            context_snapshot=context.snapshot(),
        )

    async def save(
        self,
        user_id: str,
        candidates: Sequence[NudgeCandidate],
        now: Optional[datetime] = None,
    ) -> List[str]:
        if not candidates:
            return []
        expires_at = (now or _utc_now_naive()) + timedelta(hours=self.config.nudge_ttl_hours)
        return await self.client.save_nudges(
            user_id=user_id,
            nudges=[item.to_dict() for item in candidates],
            expires_at=expires_at,
        )
