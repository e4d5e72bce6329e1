"""
Feature configuration and logging setup for the memory flywheel.

Every component receives a FeatureConfig at construction; nothing reads
capability flags from the environment after startup.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_TRUTHY_VALUES = {"1", "true", "yes", "on", "enabled"}
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_logging_configured = False


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY_VALUES


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass(frozen=True)
class FeatureConfig:
    """Capability flags and tuning knobs shared by the pipeline components."""

    memory_enabled: bool = True
    enrichment_enabled: bool = True
    embedding_enabled: bool = True
    relations_enabled: bool = False
    synthesis_enabled: bool = True
    weekly_summaries_enabled: bool = True
    tracing_enabled: bool = False
    fail_fast: bool = False

    cache_backend: str = "memory"
    cache_ttl_seconds: int = 3600
    redis_url: str = ""

    max_context_blocks: int = 10
    similarity_threshold: float = 0.75
    relation_rate_limit: int = 5
    relation_window: int = 20

    job_max_attempts: int = 3
    retry_backoff_ms: int = 1000
    job_retention_days: int = 7

    worker_enabled: bool = True
    worker_poll_interval_ms: int = 1000
    worker_max_concurrent_jobs: int = 5
    worker_job_timeout_ms: int = 30000
    worker_health_interval_ms: int = 60000
    worker_shutdown_grace_ms: int = 30000

    llm_nudges_enabled: bool = True
    nudge_ttl_hours: int = 24

    llm_api_base: str = ""
    llm_api_key: str = ""
    llm_model: str = ""
    llm_timeout_sec: float = 20.0
    embedding_backend: str = "hash"
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_model: str = "hash-v1"
    embedding_dim: int = 64

    trace_sink_url: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "FeatureConfig":
        embedding_backend = (
            os.getenv("EMBEDDING_BACKEND", "hash").strip().lower() or "hash"
        )
        return cls(
            memory_enabled=_env_bool("MEMORY_SYSTEM_ENABLED", True),
            enrichment_enabled=_env_bool("MEMORY_ENRICHMENT_ENABLED", True),
            embedding_enabled=_env_bool("MEMORY_EMBEDDING_ENABLED", True),
            relations_enabled=_env_bool("MEMORY_RELATIONS_ENABLED", False),
            synthesis_enabled=_env_bool("MEMORY_SYNTHESIS_ENABLED", True),
            weekly_summaries_enabled=_env_bool("MEMORY_WEEKLY_SUMMARIES_ENABLED", True),
            tracing_enabled=_env_bool("MEMORY_TRACING_ENABLED", False),
            fail_fast=_env_bool("MEMORY_FAIL_FAST", False),
            cache_backend=(os.getenv("CACHE_BACKEND", "memory").strip().lower() or "memory"),
            cache_ttl_seconds=_env_int("MEMORY_CACHE_TTL_SECONDS", 3600, minimum=1),
            redis_url=_first_env(["REDIS_URL", "CACHE_REDIS_URL"]),
            max_context_blocks=_env_int("MEMORY_MAX_CONTEXT_BLOCKS", 10, minimum=1),
            similarity_threshold=min(
                1.0, _env_float("MEMORY_SIMILARITY_THRESHOLD", 0.75, minimum=-1.0)
            ),
            relation_rate_limit=_env_int("MEMORY_RELATION_DETECTION_RATE_LIMIT", 5),
            relation_window=_env_int("MEMORY_RELATION_WINDOW", 20, minimum=1),
            job_max_attempts=_env_int("MEMORY_RETRY_ATTEMPTS", 3, minimum=1),
            retry_backoff_ms=_env_int("MEMORY_RETRY_BACKOFF_MS", 1000),
            job_retention_days=_env_int("MEMORY_JOB_RETENTION_DAYS", 7, minimum=1),
            worker_enabled=_env_bool("MEMORY_WORKER_ENABLED", True),
            worker_poll_interval_ms=_env_int(
                "MEMORY_WORKER_POLL_INTERVAL_MS", 1000, minimum=10
            ),
            worker_max_concurrent_jobs=_env_int(
                "MEMORY_WORKER_MAX_CONCURRENT_JOBS", 5, minimum=1
            ),
            worker_job_timeout_ms=_env_int(
                "MEMORY_WORKER_JOB_TIMEOUT_MS", 30000, minimum=10
            ),
            worker_health_interval_ms=_env_int(
                "MEMORY_WORKER_HEALTH_CHECK_INTERVAL_MS", 60000, minimum=100
            ),
            worker_shutdown_grace_ms=_env_int(
                "MEMORY_WORKER_SHUTDOWN_GRACE_MS", 30000
            ),
            llm_nudges_enabled=_env_bool("NUDGE_LLM_ENABLED", True),
            nudge_ttl_hours=_env_int("NUDGE_TTL_HOURS", 24, minimum=1),
            llm_api_base=_first_env(
                ["LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]
            ),
            llm_api_key=_first_env(["LLM_API_KEY", "OPENAI_API_KEY"]),
            llm_model=_first_env(["LLM_MODEL", "LLM_MODEL_NAME", "OPENAI_MODEL"]),
            llm_timeout_sec=_env_float("LLM_TIMEOUT_SEC", 20.0, minimum=1.0),
            embedding_backend=embedding_backend,
            embedding_api_base=_first_env(
                ["EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]
            ),
            embedding_api_key=_first_env(["EMBEDDING_API_KEY", "OPENAI_API_KEY"]),
            embedding_model=_first_env(
                ["EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"], default="hash-v1"
            ),
            embedding_dim=_env_int("EMBEDDING_DIM", 64, minimum=16),
            trace_sink_url=_first_env(["TRACE_SINK_URL"]),
            log_level=(os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"),
        )

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for secret_key in ("llm_api_key", "embedding_api_key"):
            if payload.get(secret_key):
                payload[secret_key] = "***"
        return payload


def setup_logging(config: Optional[FeatureConfig] = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        config: FeatureConfig providing the log level; read from env if None
    """
    global _logging_configured
    if _logging_configured:
        return
    level_name = (config.log_level if config is not None else os.getenv("LOG_LEVEL", "INFO"))
    level = getattr(logging, str(level_name).strip().upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    _logging_configured = True
