"""
ORM models and closed value sets for the memory flywheel store.

Tables fall into four groups:
- memory: blocks, relations, the append-only ledger, per-user settings
- behavior: mood check-ins, journal entries, goals, weekly actions, tool runs
- nudges: generated nudges, personalization weights, agent events
- runtime: background jobs, relation-detection quota windows, insights
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """Register an explicit sqlite adapter for datetime values (3.12+ deprecation)."""
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime; every timestamp column stores naive UTC."""
    return _utc_now().replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _load_json(raw: Optional[str], default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def _load_json_list(raw: Optional[str]) -> List[Any]:
    value = _load_json(raw, [])
    return value if isinstance(value, list) else []


def _load_json_dict(raw: Optional[str]) -> Dict[str, Any]:
    value = _load_json(raw, {})
    return value if isinstance(value, dict) else {}


# =============================================================================
# Closed value sets
# =============================================================================


class BlockType(str, Enum):
    MESSAGE = "message"
    JOURNAL_ENTRY = "journal_entry"
    GOAL = "goal"
    ACTION_PLAN = "action_plan"
    EXERCISE = "exercise"
    REFLECTION = "reflection"
    MOOD_CHECKIN = "mood_checkin"
    INSIGHT = "insight"


class SourceFeature(str, Enum):
    CHAT = "chat"
    JOURNAL = "journal"
    GOALS = "goals"
    TOOLS = "tools"
    DASHBOARD = "dashboard"


class PrivacyLevel(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    AI_ONLY = "ai-only"


class BlockStatus(str, Enum):
    PENDING_ENRICHMENT = "pending_enrichment"
    ACTIVE = "active"
    FAILED = "failed"


class RelationType(str, Enum):
    SUPPORTS = "supports"
    ADDRESSES = "addresses"
    FOLLOWS_UP_ON = "follows_up_on"
    DERIVED_FROM = "derived_from"
    CONNECTED_TO = "connected_to"
    CONTRADICTS = "contradicts"
    REINFORCES = "reinforces"


class LedgerOperation(str, Enum):
    CREATE = "create"
    RETRIEVE = "retrieve"
    EXCLUDE = "exclude"
    INCLUDE = "include"
    DELETE = "delete"
    UPDATE_PRIVACY = "update_privacy"


class JobType(str, Enum):
    ENRICH_AND_EMBED = "enrich_and_embed"
    DETECT_RELATIONS = "detect_relations"
    SYNTHESIZE_CONTEXT = "synthesize_context"
    WEEKLY_SUMMARY = "weekly_summary"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NudgeKind(str, Enum):
    SUGGEST_TOOL = "suggest_tool"
    JOURNAL_PROMPT = "journal_prompt"
    GOAL_REMINDER = "goal_reminder"
    CROSS_FEATURE_INSIGHT = "cross_feature_insight"
    WELLNESS_CHECKPOINT = "wellness_checkpoint"
    CELEBRATION = "celebration"
    ENGAGEMENT_RECOVERY = "engagement_recovery"


class Surface(str, Enum):
    HOME = "home"
    CHAT = "chat"
    JOURNAL = "journal"
    GOALS = "goals"
    TOOLS = "tools"


def enum_values(enum_cls: Any) -> List[str]:
    return [item.value for item in enum_cls]


# =============================================================================
# Memory
# =============================================================================


class MemoryBlock(Base):
    """A unit of recorded experience, enriched and embedded in the background."""

    __tablename__ = "memory_blocks"
    __table_args__ = (
        Index("idx_memory_blocks_user_status", "user_id", "status"),
        Index("idx_memory_blocks_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    block_type = Column(String(32), nullable=False)
    source_feature = Column(String(32), nullable=False)
    source_id = Column(String(64), nullable=True)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    sentiment = Column(String(16), nullable=True)
    emotional_tone = Column(String(64), nullable=True)
    themes = Column(Text, nullable=False, default="[]")
    tags = Column(Text, nullable=False, default="[]")
    privacy_level = Column(String(16), nullable=False, default=PrivacyLevel.AI_ONLY.value)
    crisis_flag = Column(Boolean, nullable=False, default=False)
    sensitivity_flag = Column(Boolean, nullable=False, default=False)
    exclude_from_memory = Column(Boolean, nullable=False, default=False)
    relevance_score = Column(Float, nullable=True)
    embedding = Column(Text, nullable=True)
    embedding_model = Column(String(64), nullable=True)
    status = Column(
        String(24), nullable=False, default=BlockStatus.PENDING_ENRICHMENT.value
    )
    retrieval_count = Column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_retrieved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class MemoryRelation(Base):
    """Directed, typed edge between two blocks of the same owner."""

    __tablename__ = "memory_relations"
    __table_args__ = (
        UniqueConstraint(
            "source_block_id",
            "target_block_id",
            "relation_type",
            name="uq_memory_relations_edge",
        ),
        Index("idx_memory_relations_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    source_block_id = Column(
        String(36), ForeignKey("memory_blocks.id", ondelete="CASCADE"), nullable=False
    )
    target_block_id = Column(
        String(36), ForeignKey("memory_blocks.id", ondelete="CASCADE"), nullable=False
    )
    relation_type = Column(String(32), nullable=False)
    strength = Column(Float, nullable=False, default=0.5)
    auto_generated = Column(Boolean, nullable=False, default=True)
    explanation = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class MemoryLedgerEntry(Base):
    """Append-only audit trail. block_id is not a foreign key so rows outlive deletes."""

    __tablename__ = "memory_ledger"
    __table_args__ = (Index("idx_memory_ledger_block", "block_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    block_id = Column(String(36), nullable=True)
    operation = Column(String(24), nullable=False)
    actor = Column(String(64), nullable=False, default="system")
    context = Column(Text, nullable=True)
    relevance_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class UserMemorySettings(Base):
    __tablename__ = "user_memory_settings"

    user_id = Column(String(64), primary_key=True)
    memory_enabled = Column(Boolean, nullable=False, default=True)
    chat_memory_enabled = Column(Boolean, nullable=False, default=True)
    journal_memory_enabled = Column(Boolean, nullable=False, default=True)
    goals_memory_enabled = Column(Boolean, nullable=False, default=True)
    tools_memory_enabled = Column(Boolean, nullable=False, default=True)
    dashboard_memory_enabled = Column(Boolean, nullable=False, default=True)
    default_privacy_level = Column(
        String(16), nullable=False, default=PrivacyLevel.AI_ONLY.value
    )
    allow_crisis_recall = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# =============================================================================
# Behavioral signals
# =============================================================================


class MoodCheckin(Base):
    __tablename__ = "mood_checkins"
    __table_args__ = (Index("idx_mood_checkins_user_created", "user_id", "created_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    mood_value = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class JournalEntry(Base):
    __tablename__ = "journal_entries"
    __table_args__ = (Index("idx_journal_entries_user_created", "user_id", "created_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (Index("idx_goals_user_status", "user_id", "status"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    category = Column(String(64), nullable=True)
    timeframe = Column(String(32), nullable=True)
    status = Column(String(16), nullable=False, default="active")
    progress = Column(Float, nullable=False, default=0.0)
    last_progress_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class WeeklyAction(Base):
    __tablename__ = "weekly_actions"
    __table_args__ = (Index("idx_weekly_actions_user", "user_id"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    goal_id = Column(String(36), ForeignKey("goals.id", ondelete="CASCADE"), nullable=True)
    title = Column(String(255), nullable=False, default="")
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class ToolCompletion(Base):
    __tablename__ = "tool_completions"
    __table_args__ = (Index("idx_tool_completions_user_completed", "user_id", "completed_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    tool_name = Column(String(64), nullable=False)
    completed_at = Column(DateTime, default=_utc_now_naive, nullable=False)


# =============================================================================
# Nudges and personalization
# =============================================================================


class PersonalizationWeights(Base):
    __tablename__ = "personalization_weights"

    user_id = Column(String(64), primary_key=True)
    empathy = Column(Float, nullable=False, default=0.70)
    formality = Column(Float, nullable=False, default=0.30)
    brevity = Column(Float, nullable=False, default=0.50)
    nudge_freq_daily = Column(Integer, nullable=False, default=2)
    energy_bias = Column(String(16), nullable=False, default="medium")
    cadence_bias = Column(String(16), nullable=False, default="medium")
    quiet_hours_start = Column(Integer, nullable=True)
    quiet_hours_end = Column(Integer, nullable=True)
    utc_offset_minutes = Column(Integer, nullable=False, default=0)
    llm_nudges_enabled = Column(Boolean, nullable=False, default=False)
    flywheel_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class Nudge(Base):
    __tablename__ = "nudges"
    __table_args__ = (
        Index("idx_nudges_user_surface", "user_id", "target_surface"),
        Index("idx_nudges_expires", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    kind = Column(String(32), nullable=False)
    target_surface = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    cta_label = Column(String(64), nullable=True)
    cta_action = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    source_rule = Column(String(96), nullable=False)
    explainability = Column(Text, nullable=True)
    context_snapshot = Column(Text, nullable=True)
    shown_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    dismissed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class AgentEvent(Base):
    """Inbound 'user performed an action' events driving the nudge loop."""

    __tablename__ = "agent_events"
    __table_args__ = (Index("idx_agent_events_user_created", "user_id", "created_at"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    event_type = Column(String(64), nullable=False)
    source_feature = Column(String(32), nullable=True)
    source_id = Column(String(64), nullable=True)
    data = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


# =============================================================================
# Runtime
# =============================================================================


class Job(Base):
    """Durable background job. Claim is a conditional pending -> processing update."""

    __tablename__ = "memory_jobs"
    __table_args__ = (
        Index("idx_memory_jobs_claim", "status", "priority", "created_at"),
        Index("idx_memory_jobs_user", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    job_type = Column(String(32), nullable=False)
    user_id = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False, default="{}")
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)


class RelationQuota(Base):
    """Per-user hourly relation-detection counter."""

    __tablename__ = "relation_quota"

    user_id = Column(String(64), primary_key=True)
    window_start = Column(DateTime, primary_key=True)
    used = Column(Integer, nullable=False, default=0)


class MemoryInsight(Base):
    __tablename__ = "memory_insights"
    __table_args__ = (Index("idx_memory_insights_user_period", "user_id", "period_end"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)
    insight_type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="{}")
    source_block_ids = Column(Text, nullable=False, default="[]")
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class InsightsCache(Base):
    __tablename__ = "insights_cache"

    user_id = Column(String(64), primary_key=True)
    period = Column(String(8), primary_key=True)
    snapshot = Column(Text, nullable=False, default="{}")
    computed_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class SchemaMigration(Base):
    """Applied schema migration records."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)
