"""
Memory pipeline: ingestion, enrichment + embedding, relation detection,
retrieval + synthesis, weekly summaries and user memory controls.

Ingestion and retrieval favor availability: they return something usable
(possibly nothing) instead of raising. Job handlers favor correctness: they
either write their results in one update or raise so the worker can retry.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import FeatureConfig
from db.job_queue import JobQueue
from db.models import (
    BlockStatus,
    BlockType,
    JobType,
    PrivacyLevel,
    RelationType,
    SourceFeature,
    _utc_now_naive,
    enum_values,
)
from llm_client import (
    CompletionError,
    EmbeddingError,
    append_degrade_reason,
    parse_json_object,
)
from prompts import (
    enrichment_prompt,
    relation_prompt,
    synthesis_prompt,
    weekly_summary_prompt,
)

logger = logging.getLogger(__name__)

ENRICH_JOB_PRIORITY = 10
RELATIONS_JOB_PRIORITY = 5
SYNTHESIS_JOB_PRIORITY = 3
WEEKLY_SUMMARY_JOB_PRIORITY = 0

_SENTIMENTS = {"positive", "neutral", "negative", "mixed"}
_TONES = {"calming", "supportive", "encouraging", "reflective"}
_MOOD_TRENDS = {"improving", "stable", "fluctuating", "declining"}
_DEFAULT_TONE = "supportive"


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


def context_cache_key(user_id: str, target_feature: str, query: str) -> str:
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()[:16]
    return f"memory:context:{user_id}:{target_feature}:{digest}"


def context_cache_pattern(user_id: str) -> str:
    return f"memory:context:{user_id}:*"


def _str_list(value: Any, limit: int, max_len: int = 60) -> List[str]:
    if not isinstance(value, list):
        return []
    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        text = item.strip()[:max_len]
        if text and text not in items:
            items.append(text)
        if len(items) >= limit:
            break
    return items


def _clamp_unit(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))


@dataclass
class SynthesizedContext:
    """Compact context handed to a feature before it talks to the user."""

    context_bullets: List[str] = field(default_factory=list)
    suggested_tone: str = _DEFAULT_TONE
    key_themes: List[str] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    degrade_reasons: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.context_bullets and not self.sources

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_bullets": list(self.context_bullets),
            "suggested_tone": self.suggested_tone,
            "key_themes": list(self.key_themes),
            "sources": [dict(item) for item in self.sources],
            "degrade_reasons": list(self.degrade_reasons),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SynthesizedContext":
        return cls(
            context_bullets=list(payload.get("context_bullets") or []),
            suggested_tone=str(payload.get("suggested_tone") or _DEFAULT_TONE),
            key_themes=list(payload.get("key_themes") or []),
            sources=[dict(item) for item in payload.get("sources") or []],
            degrade_reasons=list(payload.get("degrade_reasons") or []),
        )

    @classmethod
    def empty(cls, reason: Optional[str] = None) -> "SynthesizedContext":
        context = cls()
        append_degrade_reason(context.degrade_reasons, reason or "")
        return context


class MemoryService:
    def __init__(
        self,
        *,
        client: Any,
        queue: JobQueue,
        cache: Any,
        completion: Any,
        embedder: Any,
        config: FeatureConfig,
        sink: Any,
        tracer: Any,
    ) -> None:
        self.client = client
        self.queue = queue
        self.cache = cache
        self.completion = completion
        self.embedder = embedder
        self.config = config
        self.sink = sink
        self.tracer = tracer

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest_minimal(
        self,
        *,
        user_id: str,
        block_type: str,
        source_feature: str,
        content: str,
        source_id: Optional[str] = None,
        privacy_level: Optional[str] = None,
        crisis_flag: bool = False,
        sensitivity_flag: bool = False,
        exclude_from_memory: bool = False,
        actor: str = "system",
    ) -> Optional[Dict[str, Any]]:
        """
        Write a pending block, ledger it and enqueue enrichment.

        Returns None without side effects when memory is off for the user
        or for the source feature. Never waits on the language-model services.
        """
        if not self.config.memory_enabled:
            return None
        if block_type not in enum_values(BlockType):
            raise ValueError(f"Unknown block type '{block_type}'")
        if source_feature not in enum_values(SourceFeature):
            raise ValueError(f"Unknown source feature '{source_feature}'")
        if privacy_level is not None and privacy_level not in enum_values(PrivacyLevel):
            raise ValueError(f"Invalid privacy level '{privacy_level}'")
        if not (content or "").strip():
            raise ValueError("content must not be empty")

        settings = await self.client.get_memory_settings(user_id)
        if not self.feature_memory_enabled(settings, source_feature):
            return None

        block = await self.client.create_block(
            user_id=user_id,
            block_type=block_type,
            source_feature=source_feature,
            content=content,
            privacy_level=privacy_level or settings["default_privacy_level"],
            source_id=source_id,
            crisis_flag=crisis_flag,
            sensitivity_flag=sensitivity_flag,
            exclude_from_memory=exclude_from_memory,
            actor=actor,
        )
        # Enqueue happens after the block is committed.
        block["enrichment_job_id"] = await self.queue.enqueue(
            JobType.ENRICH_AND_EMBED,
            user_id,
            {"block_id": block["id"]},
            priority=ENRICH_JOB_PRIORITY,
        )
        self.sink.submit(self.invalidate_user_context(user_id), label="cache_invalidate")
        self.tracer.emit(
            "memory.ingest",
            user_id=user_id,
            block_id=block["id"],
            block_type=block_type,
            source_feature=source_feature,
        )
        return block

    @staticmethod
    def feature_memory_enabled(settings: Dict[str, Any], source_feature: str) -> bool:
        if not settings.get("memory_enabled", False):
            return False
        return bool(settings.get(f"{source_feature}_memory_enabled", False))

    async def invalidate_user_context(self, user_id: str) -> int:
        try:
            return int(await self.cache.invalidate_pattern(context_cache_pattern(user_id)) or 0)
        except Exception as exc:
            logger.warning("Context cache invalidation failed for %s: %s", user_id, exc)
            return 0

    # =========================================================================
    # Enrichment + embedding (job handler)
    # =========================================================================

    async def enrich_and_embed_block(
        self, block_id: str, *, mark_failed_on_error: bool = False, retry: bool = False
    ) -> Dict[str, Any]:
        """
        Enrich and embed a pending block in one atomic update.

        With `retry`, a block that an earlier job left `failed` is moved back
        to pending-enrichment first.
        """
        block = await self.client.get_block(block_id)
        if block is None:
            logger.warning("Enrichment skipped: block %s no longer exists", block_id)
            return {"block_id": block_id, "status": "missing"}
        if retry and block["status"] == BlockStatus.FAILED.value:
            if await self.client.reset_failed_block(block_id):
                logger.info("Block %s reset to pending-enrichment for retry", block_id)
                block["status"] = BlockStatus.PENDING_ENRICHMENT.value
        if block["status"] != BlockStatus.PENDING_ENRICHMENT.value:
            return {"block_id": block_id, "status": block["status"], "skipped": True}

        degrade_reasons: List[str] = []
        fields: Dict[str, Any] = {}
        if self.config.enrichment_enabled:
            fields.update(await self._extract_enrichment(block, degrade_reasons))

        if self.config.embedding_enabled:
            try:
                vector = await self.embedder.embed(block["content"])
            except Exception as exc:
                if mark_failed_on_error:
                    await self.client.mark_block_failed(block_id)
                self.tracer.emit("memory.embedding_failed", user_id=block["user_id"], block_id=block_id)
                if isinstance(exc, EmbeddingError):
                    raise
                raise EmbeddingError(f"embedding failed for block {block_id}: {exc}") from exc
            if not vector:
                if mark_failed_on_error:
                    await self.client.mark_block_failed(block_id)
                raise EmbeddingError(f"embedding for block {block_id} was empty")
            fields["embedding"] = vector
            fields["embedding_model"] = self.embedder.model_name

        if not await self.client.apply_enrichment(block_id, fields):
            return {"block_id": block_id, "status": "skipped", "skipped": True}

        relation_job_id = None
        if (
            self.config.relations_enabled
            and "embedding" in fields
            and not block["exclude_from_memory"]
        ):
            used = await self.client.get_relation_quota_used(user_id=block["user_id"])
            if used < self.config.relation_rate_limit:
                relation_job_id = await self.queue.enqueue(
                    JobType.DETECT_RELATIONS,
                    block["user_id"],
                    {"block_id": block_id},
                    priority=RELATIONS_JOB_PRIORITY,
                )
            else:
                logger.info(
                    "Relation quota exhausted for %s; no detection for block %s",
                    block["user_id"],
                    block_id,
                )

        self.sink.submit(
            self.invalidate_user_context(block["user_id"]), label="cache_invalidate"
        )
        self.tracer.emit(
            "memory.enriched",
            user_id=block["user_id"],
            block_id=block_id,
            enriched=bool(fields.get("summary")),
            degrade_reasons=list(degrade_reasons),
        )
        return {
            "block_id": block_id,
            "status": BlockStatus.ACTIVE.value,
            "enriched": "summary" in fields,
            "embedded": "embedding" in fields,
            "relation_job_id": relation_job_id,
            "degrade_reasons": degrade_reasons,
        }

    async def mark_enrichment_failed(self, block_id: str) -> bool:
        if not block_id:
            return False
        changed = await self.client.mark_block_failed(block_id)
        if changed:
            logger.warning("Block %s marked failed after exhausting enrichment attempts", block_id)
        return changed

    async def _extract_enrichment(
        self, block: Dict[str, Any], degrade_reasons: List[str]
    ) -> Dict[str, Any]:
        system_prompt, user_prompt = enrichment_prompt(
            block["content"], block["source_feature"], block["block_type"]
        )
        try:
            raw = await self.completion.complete(system_prompt, user_prompt)
        except Exception as exc:
            logger.warning("Enrichment failed for block %s: %s", block["id"], exc)
            append_degrade_reason(degrade_reasons, "enrichment_failed")
            return {}
        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("Enrichment for block %s returned no JSON object", block["id"])
            append_degrade_reason(degrade_reasons, "enrichment_unparseable")
            return {}

        fields: Dict[str, Any] = {
            "themes": _str_list(parsed.get("themes"), 5),
            "tags": _str_list(parsed.get("tags"), 8, max_len=40),
            "crisis_flag": bool(block["crisis_flag"] or parsed.get("crisis_flag") is True),
            "sensitivity_flag": bool(
                block["sensitivity_flag"] or parsed.get("sensitivity_flag") is True
            ),
        }
        summary = parsed.get("summary")
        if isinstance(summary, str) and summary.strip():
            fields["summary"] = summary.strip()[:500]
        sentiment = str(parsed.get("sentiment") or "").strip().lower()
        if sentiment in _SENTIMENTS:
            fields["sentiment"] = sentiment
        tone = parsed.get("emotional_tone")
        if isinstance(tone, str) and tone.strip():
            fields["emotional_tone"] = tone.strip()[:50]
        relevance = _clamp_unit(parsed.get("relevance_score"))
        if relevance is not None:
            fields["relevance_score"] = relevance
        return fields

    # =========================================================================
    # Relation detection (job handler)
    # =========================================================================

    async def detect_relations_for_block(
        self, block_id: str, *, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        result: Dict[str, Any] = {"block_id": block_id, "compared": 0, "created": 0, "failed": 0}
        if not self.config.relations_enabled:
            result["skipped"] = "relations_disabled"
            return result

        block = await self.client.get_block(block_id)
        if block is None:
            result["skipped"] = "missing"
            return result
        if user_id is not None and block["user_id"] != user_id:
            result["skipped"] = "owner_mismatch"
            return result
        if block["status"] != BlockStatus.ACTIVE.value or block["exclude_from_memory"]:
            result["skipped"] = "not_eligible"
            return result

        owner = block["user_id"]
        if not await self.client.try_consume_relation_quota(
            user_id=owner, limit=self.config.relation_rate_limit
        ):
            logger.info("Relation detection quota exceeded for %s", owner)
            self.tracer.emit("memory.relation_quota_exceeded", user_id=owner, block_id=block_id)
            result["skipped"] = "quota_exceeded"
            return result

        candidates = await self.client.get_recent_active_blocks(
            user_id=owner,
            limit=self.config.relation_window,
            exclude_block_id=block_id,
        )
        for candidate in candidates:
            result["compared"] += 1
            try:
                decision = await self._judge_relation(candidate, block)
                if decision is None:
                    continue
                relation = await self.client.create_relation(
                    user_id=owner,
                    source_block_id=block_id,
                    target_block_id=candidate["id"],
                    relation_type=decision["relation_type"],
                    strength=decision["strength"],
                    explanation=decision["explanation"],
                    auto_generated=True,
                )
            except Exception as exc:
                result["failed"] += 1
                logger.warning(
                    "Relation check %s -> %s failed: %s", block_id, candidate["id"], exc
                )
                continue
            if relation is not None:
                result["created"] += 1

        self.tracer.emit(
            "memory.relations_detected",
            user_id=owner,
            block_id=block_id,
            compared=result["compared"],
            created=result["created"],
        )
        return result

    async def _judge_relation(
        self, earlier: Dict[str, Any], newer: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        system_prompt, user_prompt = relation_prompt(earlier, newer)
        parsed = parse_json_object(await self.completion.complete(system_prompt, user_prompt))
        if parsed is None or parsed.get("is_related") is not True:
            return None
        relation_type = str(parsed.get("relation_type") or "").strip().lower()
        if relation_type not in enum_values(RelationType):
            return None
        explanation = parsed.get("explanation")
        return {
            "relation_type": relation_type,
            "strength": _clamp_unit(parsed.get("strength"), 0.5),
            "explanation": explanation.strip()[:300] if isinstance(explanation, str) else None,
        }

    # =========================================================================
    # Retrieval + synthesis
    # =========================================================================

    async def retrieve(
        self,
        user_id: str,
        query: str,
        *,
        target_feature: str = "chat",
        limit: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        exclude_crisis: Optional[bool] = None,
        mood: str = "unknown",
    ) -> SynthesizedContext:
        if not self.config.memory_enabled:
            return SynthesizedContext.empty("memory_disabled")
        if not normalize_query(query):
            return SynthesizedContext.empty("empty_query")

        key = context_cache_key(user_id, target_feature, query)
        cached = await self._cache_get(key)
        if cached is not None:
            self.tracer.emit("memory.retrieve", user_id=user_id, cache_hit=True)
            return SynthesizedContext.from_dict(cached)

        try:
            context = await self._retrieve_uncached(
                user_id,
                query,
                target_feature=target_feature,
                limit=limit or self.config.max_context_blocks,
                threshold=(
                    self.config.similarity_threshold
                    if similarity_threshold is None
                    else similarity_threshold
                ),
                exclude_crisis=exclude_crisis,
                mood=mood,
            )
        except Exception as exc:
            if self.config.fail_fast:
                raise
            logger.warning("Retrieval failed for %s; using empty context: %s", user_id, exc)
            return SynthesizedContext.empty("retrieval_failed")

        if not context.is_empty and not context.degrade_reasons:
            await self._cache_set(key, context.to_dict())
        self.tracer.emit(
            "memory.retrieve",
            user_id=user_id,
            cache_hit=False,
            hits=len(context.sources),
            degrade_reasons=list(context.degrade_reasons),
        )
        return context

    async def _retrieve_uncached(
        self,
        user_id: str,
        query: str,
        *,
        target_feature: str,
        limit: int,
        threshold: float,
        exclude_crisis: Optional[bool],
        mood: str,
    ) -> SynthesizedContext:
        settings = await self.client.get_memory_settings(user_id)
        if not settings.get("memory_enabled", False):
            return SynthesizedContext.empty("memory_disabled")
        if exclude_crisis is None:
            exclude_crisis = not settings.get("allow_crisis_recall", False)

        query_vector = await self.embedder.embed(query)
        hits = await self.client.search_similar_blocks(
            user_id=user_id,
            query_vector=query_vector,
            limit=limit,
            threshold=threshold,
            exclude_crisis=exclude_crisis,
        )
        if not hits:
            return SynthesizedContext.empty()

        self.sink.submit(
            self.client.record_retrievals(
                user_id=user_id,
                hits=[(block["id"], similarity) for block, similarity in hits],
                context=f"{target_feature}:{normalize_query(query)[:80]}",
            ),
            label="record_retrievals",
        )
        sources = [
            {
                "block_id": block["id"],
                "similarity": similarity,
                "source_feature": block["source_feature"],
            }
            for block, similarity in hits
        ]
        context = await self._synthesize(hits, query=query, target_feature=target_feature, mood=mood)
        context.sources = sources
        return context

    async def _synthesize(
        self,
        hits: Sequence[Tuple[Dict[str, Any], float]],
        *,
        query: str,
        target_feature: str,
        mood: str,
    ) -> SynthesizedContext:
        if not self.config.synthesis_enabled:
            return self._summaries_context(hits)

        system_prompt, user_prompt = synthesis_prompt(
            hits, query=query, target_feature=target_feature, mood=mood
        )
        try:
            raw = await self.completion.complete(system_prompt, user_prompt)
        except Exception as exc:
            if self.config.fail_fast:
                raise
            logger.warning("Context synthesis failed: %s", exc)
            return SynthesizedContext.empty("synthesis_failed")
        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("Context synthesis returned no JSON object")
            return SynthesizedContext.empty("synthesis_unparseable")

        tone = str(parsed.get("suggested_tone") or "").strip().lower()
        return SynthesizedContext(
            context_bullets=_str_list(parsed.get("context_bullets"), 4, max_len=300),
            suggested_tone=tone if tone in _TONES else _DEFAULT_TONE,
            key_themes=_str_list(parsed.get("key_themes"), 4),
        )

    @staticmethod
    def _summaries_context(hits: Sequence[Tuple[Dict[str, Any], float]]) -> SynthesizedContext:
        bullets: List[str] = []
        themes: List[str] = []
        for block, _ in hits[:4]:
            text = (block.get("summary") or block.get("content") or "").strip()
            if text:
                bullets.append(text[:300])
            for theme in block.get("themes") or []:
                if theme not in themes:
                    themes.append(theme)
        return SynthesizedContext(context_bullets=bullets, key_themes=themes[:4])

    async def prewarm_context(
        self, *, user_id: str, query: str, target_feature: str = "chat"
    ) -> Dict[str, Any]:
        if not normalize_query(query):
            return {"user_id": user_id, "skipped": "empty_query"}
        context = await self.retrieve(user_id, query, target_feature=target_feature)
        return {
            "user_id": user_id,
            "target_feature": target_feature,
            "bullets": len(context.context_bullets),
            "degrade_reasons": list(context.degrade_reasons),
        }

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            value = await self.cache.get(key)
        except Exception as exc:
            logger.warning("Context cache read failed for %s: %s", key, exc)
            return None
        return value if isinstance(value, dict) else None

    async def _cache_set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            await self.cache.set(key, value, self.config.cache_ttl_seconds)
        except Exception as exc:
            logger.warning("Context cache write failed for %s: %s", key, exc)

    # =========================================================================
    # Weekly summary (job handler)
    # =========================================================================

    async def generate_weekly_summary(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        if not self.config.weekly_summaries_enabled:
            return {"user_id": user_id, "skipped": "weekly_summaries_disabled"}
        period_end = now or _utc_now_naive()
        period_start = period_end - timedelta(days=7)
        blocks = await self.client.list_blocks_since(
            user_id=user_id, since=period_start, limit=50
        )
        if not blocks:
            return {"user_id": user_id, "skipped": "no_activity"}
        moods = await self.client.get_recent_moods(user_id=user_id, since=period_start)
        mood_values = [item["mood_value"] for item in reversed(moods)]

        chronological = list(reversed(blocks))
        system_prompt, user_prompt = weekly_summary_prompt(chronological[-30:], mood_values)
        parsed = parse_json_object(await self.completion.complete(system_prompt, user_prompt))
        if parsed is None:
            raise CompletionError("weekly summary response was not a JSON object")

        mood_trend = str(parsed.get("mood_trend") or "").strip().lower()
        content = {
            "summary": str(parsed.get("summary") or "").strip(),
            "key_themes": _str_list(parsed.get("key_themes"), 3),
            "highlights": _str_list(parsed.get("highlights"), 3, max_len=200),
            "reflections": _str_list(parsed.get("reflections"), 2, max_len=200),
            "mood_trend": mood_trend if mood_trend in _MOOD_TRENDS else "stable",
            "encouragement": str(parsed.get("encouragement") or "").strip(),
            "block_count": len(blocks),
            "mood_checkins": len(mood_values),
        }
        title = str(parsed.get("title") or "").strip()[:120] or "Your week in review"
        insight_id = await self.client.save_insight(
            user_id=user_id,
            insight_type="weekly_summary",
            title=title,
            content=content,
            source_block_ids=[block["id"] for block in chronological],
            period_start=period_start,
            period_end=period_end,
        )
        self.tracer.emit("memory.weekly_summary", user_id=user_id, insight_id=insight_id)
        return {"user_id": user_id, "insight_id": insight_id, "title": title}

    # =========================================================================
    # User controls
    # =========================================================================

    async def exclude_block(
        self, user_id: str, block_id: str, *, reason: Optional[str] = None
    ) -> bool:
        changed = await self.client.set_block_excluded(
            user_id=user_id, block_id=block_id, excluded=True, context=reason
        )
        if changed:
            await self.invalidate_user_context(user_id)
        return changed

    async def include_block(self, user_id: str, block_id: str) -> bool:
        changed = await self.client.set_block_excluded(
            user_id=user_id, block_id=block_id, excluded=False
        )
        if changed:
            await self.invalidate_user_context(user_id)
        return changed

    async def delete_block(
        self, user_id: str, block_id: str, *, reason: Optional[str] = None
    ) -> bool:
        deleted = await self.client.delete_block(
            user_id=user_id, block_id=block_id, context=reason
        )
        if deleted:
            await self.invalidate_user_context(user_id)
        return deleted

    async def update_privacy_level(self, user_id: str, block_id: str, privacy_level: str) -> bool:
        return await self.client.update_block_privacy(
            user_id=user_id, block_id=block_id, privacy_level=privacy_level
        )

    async def explain_block(self, user_id: str, block_id: str) -> Dict[str, Any]:
        """Why a block was remembered and every time it was retrieved."""
        block = await self.client.get_block(block_id, user_id=user_id)
        ledger = await self.client.get_ledger(user_id=user_id, block_id=block_id)
        created = next((item for item in ledger if item["operation"] == "create"), None)
        return {
            "block": block,
            "why_remembered": created,
            "retrievals": [item for item in ledger if item["operation"] == "retrieve"],
            "ledger": ledger,
        }

    async def get_settings(self, user_id: str) -> Dict[str, Any]:
        return await self.client.get_memory_settings(user_id)

    async def update_settings(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        updated = await self.client.update_memory_settings(user_id, **fields)
        await self.invalidate_user_context(user_id)
        return updated
