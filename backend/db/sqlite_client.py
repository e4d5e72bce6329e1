"""
SQLite Client for the memory flywheel.

This module implements the relational store behind the pipeline:
- Memory blocks with an append-only ledger of every operation
- Typed relations between blocks of the same owner
- Cosine similarity search over persisted block vectors
- Behavioral reads (moods, journals, goals, actions, tool runs)
- Nudge persistence and store-backed rate-limit counters
"""

from __future__ import annotations

import json
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import aliased

from .migration_runner import apply_pending_migrations
from .models import (
    AgentEvent,
    Base,
    BlockStatus,
    Goal,
    InsightsCache,
    JournalEntry,
    LedgerOperation,
    MemoryBlock,
    MemoryInsight,
    MemoryLedgerEntry,
    MemoryRelation,
    MoodCheckin,
    Nudge,
    PersonalizationWeights,
    PrivacyLevel,
    RelationQuota,
    ToolCompletion,
    UserMemorySettings,
    WeeklyAction,
    _dump_json,
    _load_json_dict,
    _load_json_list,
    _utc_now_naive,
)

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_SETTINGS_FIELDS = {
    "memory_enabled",
    "chat_memory_enabled",
    "journal_memory_enabled",
    "goals_memory_enabled",
    "tools_memory_enabled",
    "dashboard_memory_enabled",
    "default_privacy_level",
    "allow_crisis_recall",
}
_WEIGHT_FIELDS = {
    "empathy",
    "formality",
    "brevity",
    "nudge_freq_daily",
    "energy_bias",
    "cadence_bias",
    "quiet_hours_start",
    "quiet_hours_end",
    "utc_offset_minutes",
    "llm_nudges_enabled",
    "flywheel_enabled",
}
_ENRICHMENT_FIELDS = {
    "summary",
    "sentiment",
    "emotional_tone",
    "themes",
    "tags",
    "crisis_flag",
    "sensitivity_flag",
    "relevance_score",
    "embedding",
    "embedding_model",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


class SQLiteClient:
    """
    Async SQLite client for memory flywheel operations.

    Core operations:
    - create_block / apply_enrichment / mark_block_failed
    - search_similar_blocks: owner-scoped cosine search over active blocks
    - create_relation / get_recent_relations
    - behavioral reads feeding the context summary
    - nudge persistence and interaction timestamps
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_flywheel.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create tables if they don't exist, then apply pending SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _cosine_similarity(v1: List[float], v2: List[float]) -> float:
        if not v1 or not v2:
            return 0.0
        length = min(len(v1), len(v2))
        if length == 0:
            return 0.0
        dot = sum(v1[i] * v2[i] for i in range(length))
        norm_a = math.sqrt(sum(v1[i] * v1[i] for i in range(length)))
        norm_b = math.sqrt(sum(v2[i] * v2[i] for i in range(length)))
        if norm_a <= 0 or norm_b <= 0:
            return 0.0
        return float(dot / (norm_a * norm_b))

    @staticmethod
    def _parse_vector(raw: Optional[str]) -> Optional[List[float]]:
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(parsed, list) or not parsed:
            return None
        try:
            return [float(item) for item in parsed]
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _block_to_dict(row: MemoryBlock, include_embedding: bool = False) -> Dict[str, Any]:
        payload = {
            "id": row.id,
            "user_id": row.user_id,
            "block_type": row.block_type,
            "source_feature": row.source_feature,
            "source_id": row.source_id,
            "content": row.content,
            "summary": row.summary,
            "sentiment": row.sentiment,
            "emotional_tone": row.emotional_tone,
            "themes": _load_json_list(row.themes),
            "tags": _load_json_list(row.tags),
            "privacy_level": row.privacy_level,
            "crisis_flag": bool(row.crisis_flag),
            "sensitivity_flag": bool(row.sensitivity_flag),
            "exclude_from_memory": bool(row.exclude_from_memory),
            "relevance_score": row.relevance_score,
            "status": row.status,
            "has_embedding": bool(row.embedding),
            "embedding_model": row.embedding_model,
            "retrieval_count": int(row.retrieval_count or 0),
            "last_retrieved_at": _iso(row.last_retrieved_at),
            "created_at": _iso(row.created_at),
        }
        if include_embedding:
            payload["embedding"] = SQLiteClient._parse_vector(row.embedding)
        return payload

    @staticmethod
    def _settings_to_dict(row: UserMemorySettings) -> Dict[str, Any]:
        return {field: getattr(row, field) for field in sorted(_SETTINGS_FIELDS)} | {
            "user_id": row.user_id
        }

    @staticmethod
    def _weights_to_dict(row: PersonalizationWeights) -> Dict[str, Any]:
        return {field: getattr(row, field) for field in sorted(_WEIGHT_FIELDS)} | {
            "user_id": row.user_id
        }

    @staticmethod
    def _nudge_to_dict(row: Nudge) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "kind": row.kind,
            "target_surface": row.target_surface,
            "title": row.title,
            "message": row.message,
            "cta_label": row.cta_label,
            "cta_action": _load_json_dict(row.cta_action) if row.cta_action else None,
            "priority": int(row.priority or 0),
            "source_rule": row.source_rule,
            "explainability": row.explainability,
            "context_snapshot": _load_json_dict(row.context_snapshot),
            "shown_at": _iso(row.shown_at),
            "accepted_at": _iso(row.accepted_at),
            "dismissed_at": _iso(row.dismissed_at),
            "completed_at": _iso(row.completed_at),
            "expires_at": _iso(row.expires_at),
            "created_at": _iso(row.created_at),
        }

    @staticmethod
    def _ledger_row(
        *,
        user_id: str,
        block_id: Optional[str],
        operation: LedgerOperation,
        actor: str,
        context: Optional[str] = None,
        relevance_score: Optional[float] = None,
    ) -> MemoryLedgerEntry:
        return MemoryLedgerEntry(
            user_id=user_id,
            block_id=block_id,
            operation=operation.value,
            actor=actor or "system",
            context=context,
            relevance_score=relevance_score,
        )

    # =========================================================================
    # Per-user settings
    # =========================================================================

    async def get_memory_settings(self, user_id: str) -> Dict[str, Any]:
        """Return the user's memory settings, creating the default row on first read."""
        async with self.session() as session:
            row = await session.get(UserMemorySettings, user_id)
            if row is None:
                row = UserMemorySettings(
                    user_id=user_id,
                    memory_enabled=True,
                    chat_memory_enabled=True,
                    journal_memory_enabled=True,
                    goals_memory_enabled=True,
                    tools_memory_enabled=True,
                    dashboard_memory_enabled=True,
                    default_privacy_level=PrivacyLevel.AI_ONLY.value,
                    allow_crisis_recall=False,
                )
                session.add(row)
                await session.flush()
            return self._settings_to_dict(row)

    async def update_memory_settings(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        unknown = set(fields) - _SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown memory settings fields: {sorted(unknown)}")
        privacy = fields.get("default_privacy_level")
        if privacy is not None and privacy not in {item.value for item in PrivacyLevel}:
            raise ValueError(f"Invalid privacy level '{privacy}'")
        await self.get_memory_settings(user_id)
        async with self.session() as session:
            row = await session.get(UserMemorySettings, user_id)
            for key, value in fields.items():
                setattr(row, key, value)
            session.add(row)
            await session.flush()
            return self._settings_to_dict(row)

    async def get_personalization_weights(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(PersonalizationWeights, user_id)
            return self._weights_to_dict(row) if row is not None else None

    async def upsert_personalization_weights(
        self, user_id: str, **fields: Any
    ) -> Dict[str, Any]:
        unknown = set(fields) - _WEIGHT_FIELDS
        if unknown:
            raise ValueError(f"Unknown personalization fields: {sorted(unknown)}")
        async with self.session() as session:
            row = await session.get(PersonalizationWeights, user_id)
            if row is None:
                row = PersonalizationWeights(
                    user_id=user_id,
                    empathy=0.70,
                    formality=0.30,
                    brevity=0.50,
                    nudge_freq_daily=2,
                    energy_bias="medium",
                    cadence_bias="medium",
                    utc_offset_minutes=0,
                    llm_nudges_enabled=False,
                    flywheel_enabled=True,
                )
            for key, value in fields.items():
                setattr(row, key, value)
            session.add(row)
            await session.flush()
            return self._weights_to_dict(row)

    # =========================================================================
    # Memory blocks
    # =========================================================================

    async def create_block(
        self,
        *,
        user_id: str,
        block_type: str,
        source_feature: str,
        content: str,
        privacy_level: str,
        source_id: Optional[str] = None,
        crisis_flag: bool = False,
        sensitivity_flag: bool = False,
        exclude_from_memory: bool = False,
        actor: str = "system",
    ) -> Dict[str, Any]:
        """Insert a pending-enrichment block and its 'create' ledger entry atomically."""
        async with self.session() as session:
            row = MemoryBlock(
                user_id=user_id,
                block_type=block_type,
                source_feature=source_feature,
                source_id=source_id,
                content=content,
                themes="[]",
                tags="[]",
                privacy_level=privacy_level,
                crisis_flag=bool(crisis_flag),
                sensitivity_flag=bool(sensitivity_flag),
                exclude_from_memory=bool(exclude_from_memory),
                status=BlockStatus.PENDING_ENRICHMENT.value,
                retrieval_count=0,
            )
            session.add(row)
            await session.flush()
            session.add(
                self._ledger_row(
                    user_id=user_id,
                    block_id=row.id,
                    operation=LedgerOperation.CREATE,
                    actor=actor,
                    context=f"{source_feature}:{block_type}",
                )
            )
            await session.flush()
            return self._block_to_dict(row)

    async def get_block(
        self,
        block_id: str,
        *,
        user_id: Optional[str] = None,
        include_embedding: bool = False,
    ) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(MemoryBlock, block_id)
            if row is None:
                return None
            if user_id is not None and row.user_id != user_id:
                return None
            return self._block_to_dict(row, include_embedding=include_embedding)

    async def apply_enrichment(self, block_id: str, fields: Dict[str, Any]) -> bool:
        """
        Write enrichment/embedding fields and flip status to active in one UPDATE.

        Only blocks still pending enrichment are touched.
        """
        unknown = set(fields) - _ENRICHMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown enrichment fields: {sorted(unknown)}")
        values = dict(fields)
        for list_key in ("themes", "tags"):
            if list_key in values:
                values[list_key] = _dump_json(list(values[list_key] or []))
        if "embedding" in values and values["embedding"] is not None:
            values["embedding"] = _dump_json([float(v) for v in values["embedding"]])
        values["status"] = BlockStatus.ACTIVE.value
        values["updated_at"] = _utc_now_naive()
        async with self.session() as session:
            result = await session.execute(
                update(MemoryBlock)
                .where(MemoryBlock.id == block_id)
                .where(MemoryBlock.status == BlockStatus.PENDING_ENRICHMENT.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def mark_block_failed(self, block_id: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(MemoryBlock)
                .where(MemoryBlock.id == block_id)
                .where(MemoryBlock.status == BlockStatus.PENDING_ENRICHMENT.value)
                .values(status=BlockStatus.FAILED.value, updated_at=_utc_now_naive())
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def reset_failed_block(self, block_id: str) -> bool:
        """Move a failed block back to pending-enrichment so a retry can pick it up."""
        async with self.session() as session:
            result = await session.execute(
                update(MemoryBlock)
                .where(MemoryBlock.id == block_id)
                .where(MemoryBlock.status == BlockStatus.FAILED.value)
                .values(status=BlockStatus.PENDING_ENRICHMENT.value, updated_at=_utc_now_naive())
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def set_block_excluded(
        self,
        *,
        user_id: str,
        block_id: str,
        excluded: bool,
        actor: str = "user",
        context: Optional[str] = None,
    ) -> bool:
        async with self.session() as session:
            row = await session.get(MemoryBlock, block_id)
            if row is None or row.user_id != user_id:
                return False
            row.exclude_from_memory = bool(excluded)
            session.add(row)
            session.add(
                self._ledger_row(
                    user_id=user_id,
                    block_id=block_id,
                    operation=LedgerOperation.EXCLUDE if excluded else LedgerOperation.INCLUDE,
                    actor=actor,
                    context=context,
                )
            )
            return True

    async def update_block_privacy(
        self,
        *,
        user_id: str,
        block_id: str,
        privacy_level: str,
        actor: str = "user",
    ) -> bool:
        if privacy_level not in {item.value for item in PrivacyLevel}:
            raise ValueError(f"Invalid privacy level '{privacy_level}'")
        async with self.session() as session:
            row = await session.get(MemoryBlock, block_id)
            if row is None or row.user_id != user_id:
                return False
            previous = row.privacy_level
            row.privacy_level = privacy_level
            session.add(row)
            session.add(
                self._ledger_row(
                    user_id=user_id,
                    block_id=block_id,
                    operation=LedgerOperation.UPDATE_PRIVACY,
                    actor=actor,
                    context=f"{previous}->{privacy_level}",
                )
            )
            return True

    async def delete_block(
        self,
        *,
        user_id: str,
        block_id: str,
        actor: str = "user",
        context: Optional[str] = None,
    ) -> bool:
        """Delete a block and its relations. The ledger entry is written first and survives."""
        async with self.session() as session:
            row = await session.get(MemoryBlock, block_id)
            if row is None or row.user_id != user_id:
                return False
            session.add(
                self._ledger_row(
                    user_id=user_id,
                    block_id=block_id,
                    operation=LedgerOperation.DELETE,
                    actor=actor,
                    context=context,
                )
            )
            await session.execute(
                delete(MemoryRelation).where(
                    or_(
                        MemoryRelation.source_block_id == block_id,
                        MemoryRelation.target_block_id == block_id,
                    )
                )
            )
            await session.delete(row)
            return True

    async def get_ledger(
        self, *, user_id: str, block_id: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        query = select(MemoryLedgerEntry).where(MemoryLedgerEntry.user_id == user_id)
        if block_id is not None:
            query = query.where(MemoryLedgerEntry.block_id == block_id)
        query = query.order_by(MemoryLedgerEntry.id.asc()).limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [
            {
                "id": row.id,
                "block_id": row.block_id,
                "operation": row.operation,
                "actor": row.actor,
                "context": row.context,
                "relevance_score": row.relevance_score,
                "created_at": _iso(row.created_at),
            }
            for row in rows
        ]

    async def get_recent_active_blocks(
        self,
        *,
        user_id: str,
        limit: int,
        exclude_block_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Most recent active, non-excluded blocks for the owner (relation window)."""
        query = (
            select(MemoryBlock)
            .where(MemoryBlock.user_id == user_id)
            .where(MemoryBlock.status == BlockStatus.ACTIVE.value)
            .where(MemoryBlock.exclude_from_memory == False)  # noqa: E712
        )
        if exclude_block_id is not None:
            query = query.where(MemoryBlock.id != exclude_block_id)
        query = query.order_by(MemoryBlock.created_at.desc()).limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [self._block_to_dict(row) for row in rows]

    async def list_blocks_since(
        self,
        *,
        user_id: str,
        since: datetime,
        active_only: bool = True,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        query = (
            select(MemoryBlock)
            .where(MemoryBlock.user_id == user_id)
            .where(MemoryBlock.created_at >= since)
            .where(MemoryBlock.exclude_from_memory == False)  # noqa: E712
        )
        if active_only:
            query = query.where(MemoryBlock.status == BlockStatus.ACTIVE.value)
        query = query.order_by(MemoryBlock.created_at.desc()).limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [self._block_to_dict(row) for row in rows]

    async def get_top_relevance_blocks(
        self, *, user_id: str, limit: int = 3
    ) -> List[Dict[str, Any]]:
        """Highest-relevance active blocks, never crisis or sensitive ones."""
        query = (
            select(MemoryBlock)
            .where(MemoryBlock.user_id == user_id)
            .where(MemoryBlock.status == BlockStatus.ACTIVE.value)
            .where(MemoryBlock.exclude_from_memory == False)  # noqa: E712
            .where(MemoryBlock.crisis_flag == False)  # noqa: E712
            .where(MemoryBlock.sensitivity_flag == False)  # noqa: E712
            .order_by(
                func.coalesce(MemoryBlock.relevance_score, 0.0).desc(),
                MemoryBlock.created_at.desc(),
            )
            .limit(max(1, int(limit)))
        )
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [self._block_to_dict(row) for row in rows]

    async def get_activity_dates(self, *, user_id: str, limit: int = 30) -> List[datetime]:
        """Creation timestamps of the owner's most recent blocks, newest first."""
        query = (
            select(MemoryBlock.created_at)
            .where(MemoryBlock.user_id == user_id)
            .order_by(MemoryBlock.created_at.desc())
            .limit(max(1, int(limit)))
        )
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [row for row in rows if isinstance(row, datetime)]

    async def search_similar_blocks(
        self,
        *,
        user_id: str,
        query_vector: List[float],
        limit: int,
        threshold: float,
        exclude_crisis: bool = True,
    ) -> List[Tuple[Dict[str, Any], float]]:
        """
        Owner-scoped similarity search.

        Only active, non-excluded blocks with a stored vector are candidates.
        Results at or above threshold, highest similarity first.
        """
        if not query_vector:
            return []
        query = (
            select(MemoryBlock)
            .where(MemoryBlock.user_id == user_id)
            .where(MemoryBlock.status == BlockStatus.ACTIVE.value)
            .where(MemoryBlock.exclude_from_memory == False)  # noqa: E712
            .where(MemoryBlock.embedding.is_not(None))
        )
        if exclude_crisis:
            query = query.where(
                and_(
                    MemoryBlock.crisis_flag == False,  # noqa: E712
                    MemoryBlock.sensitivity_flag == False,  # noqa: E712
                )
            )
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()

        scored: List[Tuple[Dict[str, Any], float]] = []
        for row in rows:
            vector = self._parse_vector(row.embedding)
            if vector is None:
                continue
            similarity = self._cosine_similarity(query_vector, vector)
            if similarity < threshold:
                continue
            scored.append((self._block_to_dict(row), round(similarity, 6)))
        scored.sort(key=lambda item: (item[1], item[0]["created_at"] or ""), reverse=True)
        return scored[: max(1, int(limit))]

    async def record_retrievals(
        self,
        *,
        user_id: str,
        hits: Iterable[Tuple[str, float]],
        actor: str = "retrieval",
        context: Optional[str] = None,
    ) -> int:
        """Ledger a 'retrieve' per hit and bump retrieval counters."""
        pairs = [(str(block_id), float(score)) for block_id, score in hits]
        if not pairs:
            return 0
        now_value = _utc_now_naive()
        async with self.session() as session:
            for block_id, score in pairs:
                session.add(
                    self._ledger_row(
                        user_id=user_id,
                        block_id=block_id,
                        operation=LedgerOperation.RETRIEVE,
                        actor=actor,
                        context=context,
                        relevance_score=score,
                    )
                )
            result = await session.execute(
                update(MemoryBlock)
                .where(MemoryBlock.user_id == user_id)
                .where(MemoryBlock.id.in_([block_id for block_id, _ in pairs]))
                .values(
                    retrieval_count=MemoryBlock.retrieval_count + 1,
                    last_retrieved_at=now_value,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def get_users_with_recent_blocks(self, *, since: datetime) -> List[str]:
        async with self.session() as session:
            rows = await session.execute(
                select(MemoryBlock.user_id)
                .where(MemoryBlock.created_at >= since)
                .distinct()
            )
            return sorted(str(item) for item in rows.scalars().all())

    # =========================================================================
    # Relations
    # =========================================================================

    async def create_relation(
        self,
        *,
        user_id: str,
        source_block_id: str,
        target_block_id: str,
        relation_type: str,
        strength: float = 0.5,
        explanation: Optional[str] = None,
        auto_generated: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Persist an edge. Returns None for self-loops, cross-owner pairs or duplicates."""
        if source_block_id == target_block_id:
            return None
        strength_value = max(0.0, min(1.0, float(strength)))
        try:
            async with self.session() as session:
                rows = await session.execute(
                    select(MemoryBlock.id, MemoryBlock.user_id).where(
                        MemoryBlock.id.in_([source_block_id, target_block_id])
                    )
                )
                owners = {block_id: owner for block_id, owner in rows.all()}
                if owners.get(source_block_id) != user_id or owners.get(target_block_id) != user_id:
                    return None
                row = MemoryRelation(
                    user_id=user_id,
                    source_block_id=source_block_id,
                    target_block_id=target_block_id,
                    relation_type=relation_type,
                    strength=strength_value,
                    auto_generated=bool(auto_generated),
                    explanation=explanation,
                )
                session.add(row)
                await session.flush()
                return {
                    "id": row.id,
                    "user_id": row.user_id,
                    "source_block_id": row.source_block_id,
                    "target_block_id": row.target_block_id,
                    "relation_type": row.relation_type,
                    "strength": row.strength,
                    "auto_generated": bool(row.auto_generated),
                    "explanation": row.explanation,
                    "created_at": _iso(row.created_at),
                }
        except IntegrityError:
            return None

    async def get_recent_relations(
        self, *, user_id: str, since: datetime, limit: int = 5
    ) -> List[Dict[str, Any]]:
        source_block = aliased(MemoryBlock)
        target_block = aliased(MemoryBlock)
        query = (
            select(
                MemoryRelation.relation_type,
                MemoryRelation.strength,
                source_block.source_feature,
                target_block.source_feature,
            )
            .join(source_block, source_block.id == MemoryRelation.source_block_id)
            .join(target_block, target_block.id == MemoryRelation.target_block_id)
            .where(MemoryRelation.user_id == user_id)
            .where(MemoryRelation.created_at >= since)
            .order_by(MemoryRelation.created_at.desc())
            .limit(max(1, int(limit)))
        )
        async with self.session() as session:
            rows = (await session.execute(query)).all()
        return [
            {
                "relation_type": relation_type,
                "strength": strength,
                "source_feature": source_feature,
                "target_feature": target_feature,
            }
            for relation_type, strength, source_feature, target_feature in rows
        ]

    async def count_relations(self, *, user_id: str) -> int:
        async with self.session() as session:
            value = await session.scalar(
                select(func.count()).select_from(MemoryRelation).where(
                    MemoryRelation.user_id == user_id
                )
            )
        return int(value or 0)

    # =========================================================================
    # Relation-detection quota
    # =========================================================================

    @staticmethod
    def _quota_window(now: datetime) -> datetime:
        return now.replace(minute=0, second=0, microsecond=0)

    async def get_relation_quota_used(
        self, *, user_id: str, now: Optional[datetime] = None
    ) -> int:
        window_start = self._quota_window(now or _utc_now_naive())
        async with self.session() as session:
            row = await session.get(RelationQuota, (user_id, window_start))
            return int(row.used) if row is not None else 0

    async def try_consume_relation_quota(
        self, *, user_id: str, limit: int, now: Optional[datetime] = None
    ) -> bool:
        """Conditionally increment the hourly counter; False once the limit is reached."""
        if limit <= 0:
            return False
        window_start = self._quota_window(now or _utc_now_naive())
        async with self.session() as session:
            await session.execute(
                sqlite_insert(RelationQuota)
                .values(user_id=user_id, window_start=window_start, used=0)
                .on_conflict_do_nothing(index_elements=["user_id", "window_start"])
            )
            result = await session.execute(
                update(RelationQuota)
                .where(RelationQuota.user_id == user_id)
                .where(RelationQuota.window_start == window_start)
                .where(RelationQuota.used < int(limit))
                .values(used=RelationQuota.used + 1)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def purge_relation_quota(self, *, before: datetime) -> int:
        async with self.session() as session:
            result = await session.execute(
                delete(RelationQuota).where(RelationQuota.window_start < before)
            )
            return int(result.rowcount or 0)

    # =========================================================================
    # Behavioral tables
    # =========================================================================

    async def add_mood_checkin(
        self,
        *,
        user_id: str,
        mood_value: int,
        note: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        if not 1 <= int(mood_value) <= 6:
            raise ValueError("mood_value must be within 1..6")
        async with self.session() as session:
            row = MoodCheckin(
                user_id=user_id,
                mood_value=int(mood_value),
                note=note,
                created_at=created_at or _utc_now_naive(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def add_journal_entry(
        self, *, user_id: str, content: str = "", created_at: Optional[datetime] = None
    ) -> str:
        async with self.session() as session:
            row = JournalEntry(
                user_id=user_id, content=content, created_at=created_at or _utc_now_naive()
            )
            session.add(row)
            await session.flush()
            return row.id

    async def add_goal(
        self,
        *,
        user_id: str,
        title: str,
        category: Optional[str] = None,
        timeframe: Optional[str] = None,
        status: str = "active",
        progress: float = 0.0,
        created_at: Optional[datetime] = None,
        last_progress_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> str:
        async with self.session() as session:
            row = Goal(
                user_id=user_id,
                title=title,
                category=category,
                timeframe=timeframe,
                status=status,
                progress=max(0.0, min(100.0, float(progress))),
                created_at=created_at or _utc_now_naive(),
                last_progress_at=last_progress_at,
                completed_at=completed_at,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def add_weekly_action(
        self,
        *,
        user_id: str,
        goal_id: Optional[str] = None,
        title: str = "",
        completed: bool = False,
        completed_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        async with self.session() as session:
            row = WeeklyAction(
                user_id=user_id,
                goal_id=goal_id,
                title=title,
                completed=bool(completed),
                completed_at=completed_at if completed else None,
                created_at=created_at or _utc_now_naive(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def record_tool_completion(
        self, *, user_id: str, tool_name: str, completed_at: Optional[datetime] = None
    ) -> str:
        async with self.session() as session:
            row = ToolCompletion(
                user_id=user_id,
                tool_name=tool_name,
                completed_at=completed_at or _utc_now_naive(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def get_recent_moods(
        self, *, user_id: str, since: Optional[datetime] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Mood check-ins newest first."""
        query = select(MoodCheckin).where(MoodCheckin.user_id == user_id)
        if since is not None:
            query = query.where(MoodCheckin.created_at >= since)
        query = query.order_by(MoodCheckin.created_at.desc()).limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [
            {"mood_value": int(row.mood_value), "created_at": row.created_at}
            for row in rows
        ]

    async def count_journal_entries(
        self, *, user_id: str, since: Optional[datetime] = None
    ) -> int:
        query = select(func.count()).select_from(JournalEntry).where(
            JournalEntry.user_id == user_id
        )
        if since is not None:
            query = query.where(JournalEntry.created_at >= since)
        async with self.session() as session:
            return int(await session.scalar(query) or 0)

    async def get_last_journal_at(self, *, user_id: str) -> Optional[datetime]:
        async with self.session() as session:
            return await session.scalar(
                select(func.max(JournalEntry.created_at)).where(
                    JournalEntry.user_id == user_id
                )
            )

    async def get_last_tool_completion_at(self, *, user_id: str) -> Optional[datetime]:
        async with self.session() as session:
            return await session.scalar(
                select(func.max(ToolCompletion.completed_at)).where(
                    ToolCompletion.user_id == user_id
                )
            )

    async def get_active_goals(self, *, user_id: str) -> List[Dict[str, Any]]:
        """Active goals newest first."""
        query = (
            select(Goal)
            .where(Goal.user_id == user_id)
            .where(Goal.status == "active")
            .order_by(Goal.created_at.desc())
        )
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [
            {
                "id": row.id,
                "title": row.title,
                "category": row.category,
                "timeframe": row.timeframe,
                "progress": float(row.progress or 0.0),
                "last_progress_at": row.last_progress_at,
                "created_at": row.created_at,
            }
            for row in rows
        ]

    async def get_goal_creation_stats(
        self, *, user_id: str, since: datetime
    ) -> Dict[str, int]:
        """Goals created since a point in time and how many of those are completed."""
        async with self.session() as session:
            created = await session.scalar(
                select(func.count()).select_from(Goal)
                .where(Goal.user_id == user_id)
                .where(Goal.created_at >= since)
            )
            completed = await session.scalar(
                select(func.count()).select_from(Goal)
                .where(Goal.user_id == user_id)
                .where(Goal.created_at >= since)
                .where(Goal.status == "completed")
            )
        return {"created": int(created or 0), "completed": int(completed or 0)}

    async def get_action_stats(
        self, *, user_id: str, completed_since: datetime
    ) -> Dict[str, int]:
        async with self.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(WeeklyAction).where(
                    WeeklyAction.user_id == user_id
                )
            )
            completed = await session.scalar(
                select(func.count()).select_from(WeeklyAction)
                .where(WeeklyAction.user_id == user_id)
                .where(WeeklyAction.completed == True)  # noqa: E712
            )
            recent = await session.scalar(
                select(func.count()).select_from(WeeklyAction)
                .where(WeeklyAction.user_id == user_id)
                .where(WeeklyAction.completed == True)  # noqa: E712
                .where(WeeklyAction.completed_at >= completed_since)
            )
        return {
            "total": int(total or 0),
            "completed": int(completed or 0),
            "completed_recent": int(recent or 0),
        }

    # =========================================================================
    # Nudges
    # =========================================================================

    async def save_nudges(
        self, *, user_id: str, nudges: List[Dict[str, Any]], expires_at: datetime
    ) -> List[str]:
        if not nudges:
            return []
        ids: List[str] = []
        async with self.session() as session:
            for item in nudges:
                row = Nudge(
                    user_id=user_id,
                    kind=item["kind"],
                    target_surface=item["target_surface"],
                    title=item["title"],
                    message=item["message"],
                    cta_label=item.get("cta_label"),
                    cta_action=(
                        _dump_json(item["cta_action"]) if item.get("cta_action") else None
                    ),
                    priority=int(item.get("priority", 0)),
                    source_rule=item["source_rule"],
                    explainability=item.get("explainability"),
                    context_snapshot=_dump_json(item.get("context_snapshot") or {}),
                    expires_at=expires_at,
                )
                session.add(row)
                await session.flush()
                ids.append(row.id)
        return ids

    async def get_nudge(self, nudge_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(Nudge, nudge_id)
            return self._nudge_to_dict(row) if row is not None else None

    async def get_active_nudges(
        self,
        *,
        user_id: str,
        now: datetime,
        surface: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        query = (
            select(Nudge)
            .where(Nudge.user_id == user_id)
            .where(Nudge.expires_at > now)
            .where(Nudge.dismissed_at.is_(None))
            .where(Nudge.completed_at.is_(None))
        )
        if surface is not None:
            query = query.where(Nudge.target_surface == surface)
        query = query.order_by(Nudge.priority.desc(), Nudge.created_at.desc()).limit(
            max(1, int(limit))
        )
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [self._nudge_to_dict(row) for row in rows]

    async def mark_nudges_shown(self, nudge_ids: List[str], *, now: datetime) -> int:
        if not nudge_ids:
            return 0
        async with self.session() as session:
            result = await session.execute(
                update(Nudge)
                .where(Nudge.id.in_(nudge_ids))
                .where(Nudge.shown_at.is_(None))
                .values(shown_at=now)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def set_nudge_timestamp(
        self, *, user_id: str, nudge_id: str, field: str, now: datetime
    ) -> bool:
        if field not in {"accepted_at", "dismissed_at", "completed_at", "shown_at"}:
            raise ValueError(f"Unsupported nudge timestamp '{field}'")
        async with self.session() as session:
            row = await session.get(Nudge, nudge_id)
            if row is None or row.user_id != user_id:
                return False
            setattr(row, field, now)
            if field != "shown_at" and row.shown_at is None:
                row.shown_at = now
            session.add(row)
            return True

    async def count_nudges_shown_since(self, *, user_id: str, since: datetime) -> int:
        async with self.session() as session:
            value = await session.scalar(
                select(func.count()).select_from(Nudge)
                .where(Nudge.user_id == user_id)
                .where(Nudge.shown_at >= since)
            )
        return int(value or 0)

    async def get_nudge_feedback_counts(
        self, *, user_id: str, since: datetime
    ) -> Dict[str, int]:
        async with self.session() as session:
            shown = await session.scalar(
                select(func.count()).select_from(Nudge)
                .where(Nudge.user_id == user_id)
                .where(Nudge.shown_at >= since)
            )
            accepted = await session.scalar(
                select(func.count()).select_from(Nudge)
                .where(Nudge.user_id == user_id)
                .where(Nudge.shown_at >= since)
                .where(or_(Nudge.accepted_at.is_not(None), Nudge.completed_at.is_not(None)))
            )
        return {"shown": int(shown or 0), "accepted": int(accepted or 0)}

    async def delete_expired_nudges(self, *, now: datetime) -> int:
        async with self.session() as session:
            result = await session.execute(delete(Nudge).where(Nudge.expires_at <= now))
            return int(result.rowcount or 0)

    # =========================================================================
    # Agent events, insights
    # =========================================================================

    async def log_agent_event(
        self,
        *,
        user_id: str,
        event_type: str,
        source_feature: Optional[str] = None,
        source_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        async with self.session() as session:
            row = AgentEvent(
                user_id=user_id,
                event_type=event_type,
                source_feature=source_feature,
                source_id=source_id,
                data=_dump_json(data or {}),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def mark_agent_event_processed(self, event_id: str, *, now: datetime) -> None:
        async with self.session() as session:
            await session.execute(
                update(AgentEvent)
                .where(AgentEvent.id == event_id)
                .values(processed_at=now)
                .execution_options(synchronize_session=False)
            )

    async def get_agent_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(AgentEvent, event_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "user_id": row.user_id,
                "event_type": row.event_type,
                "source_feature": row.source_feature,
                "source_id": row.source_id,
                "data": _load_json_dict(row.data),
                "processed_at": _iso(row.processed_at),
                "created_at": _iso(row.created_at),
            }

    async def save_insight(
        self,
        *,
        user_id: str,
        insight_type: str,
        title: str,
        content: Dict[str, Any],
        source_block_ids: List[str],
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> str:
        async with self.session() as session:
            row = MemoryInsight(
                user_id=user_id,
                insight_type=insight_type,
                title=title,
                content=_dump_json(content),
                source_block_ids=_dump_json(list(source_block_ids)),
                period_start=period_start,
                period_end=period_end,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def get_insights(
        self, *, user_id: str, insight_type: Optional[str] = None, limit: int = 10
    ) -> List[Dict[str, Any]]:
        query = select(MemoryInsight).where(MemoryInsight.user_id == user_id)
        if insight_type is not None:
            query = query.where(MemoryInsight.insight_type == insight_type)
        query = query.order_by(MemoryInsight.created_at.desc()).limit(max(1, int(limit)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [
            {
                "id": row.id,
                "insight_type": row.insight_type,
                "title": row.title,
                "content": _load_json_dict(row.content),
                "source_block_ids": _load_json_list(row.source_block_ids),
                "period_start": _iso(row.period_start),
                "period_end": _iso(row.period_end),
                "created_at": _iso(row.created_at),
            }
            for row in rows
        ]

    async def upsert_insights_snapshot(
        self, *, user_id: str, period: str, snapshot: Dict[str, Any]
    ) -> None:
        now_value = _utc_now_naive()
        async with self.session() as session:
            await session.execute(
                sqlite_insert(InsightsCache)
                .values(
                    user_id=user_id,
                    period=period,
                    snapshot=_dump_json(snapshot),
                    computed_at=now_value,
                )
                .on_conflict_do_update(
                    index_elements=["user_id", "period"],
                    set_={"snapshot": _dump_json(snapshot), "computed_at": now_value},
                )
            )

    async def get_insights_snapshot(
        self, *, user_id: str, period: str
    ) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(InsightsCache, (user_id, period))
            if row is None:
                return None
            return {
                "period": row.period,
                "snapshot": _load_json_dict(row.snapshot),
                "computed_at": _iso(row.computed_at),
            }


# Global singleton instance
_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
