import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest_asyncio

from cache import InProcessCache
from config import FeatureConfig
from db.sqlite_client import SQLiteClient
from llm_client import CompletionError, EmbeddingError, hash_embedding
from prompts import (
    ENRICHMENT_SYSTEM,
    NUDGE_SYSTEM,
    RELATION_SYSTEM,
    SYNTHESIS_SYSTEM,
    WEEKLY_SUMMARY_SYSTEM,
)
from runtime_state import BackgroundSink, Services, TraceRecorder, build_services

Reply = Union[str, Dict[str, Any], Exception, Callable[[str], Any]]

DEFAULT_REPLIES: Dict[str, Reply] = {
    ENRICHMENT_SYSTEM: {
        "sentiment": "negative",
        "emotional_tone": "anxious",
        "themes": ["work stress", "sleep"],
        "tags": ["interview", "tomorrow"],
        "crisis_flag": False,
        "sensitivity_flag": False,
        "relevance_score": 0.8,
        "summary": "Worried about tomorrow's job interview.",
    },
    SYNTHESIS_SYSTEM: {
        "context_bullets": ["Has been anxious about a job interview."],
        "suggested_tone": "calming",
        "key_themes": ["work stress"],
    },
    RELATION_SYSTEM: {
        "is_related": True,
        "relation_type": "follows_up_on",
        "strength": 0.7,
        "explanation": "Continues the same worry.",
    },
    WEEKLY_SUMMARY_SYSTEM: {
        "title": "A week of small steps",
        "summary": "You kept showing up.",
        "key_themes": ["work stress"],
        "highlights": ["Journaled twice"],
        "reflections": ["Sleep matters"],
        "mood_trend": "stable",
        "encouragement": "Keep going.",
    },
    NUDGE_SYSTEM: {
        "kind": "journal_prompt",
        "target_surface": "journal",
        "title": "A thought about your interview prep and how it connects",
        "message": "You mentioned interview nerves. " * 10,
        "cta_label": "Write",
        "cta_action": {"target": "journal/new", "data": {"topic": "interview"}},
    },
}


class FakeCompletion:
    """Answers by system prompt; records every call."""

    def __init__(self, replies: Optional[Dict[str, Reply]] = None) -> None:
        self.replies: Dict[str, Reply] = dict(DEFAULT_REPLIES)
        self.replies.update(replies or {})
        self.calls: List[Tuple[str, str]] = []

    def calls_for(self, system_prompt: str) -> List[str]:
        return [user for system, user in self.calls if system == system_prompt]

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        reply = self.replies.get(system_prompt)
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(user_prompt)
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise CompletionError("no reply configured")
        if isinstance(reply, dict):
            return json.dumps(reply)
        return str(reply)


class FakeEmbedder:
    model_name = "hash-v1"

    def __init__(self, fail_on: Tuple[str, ...] = ()) -> None:
        self.fail_on = fail_on
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise EmbeddingError("embedding backend unavailable")
        return hash_embedding(text, 64)


@dataclass
class Stack:
    client: SQLiteClient
    config: FeatureConfig
    sink: BackgroundSink
    tracer: TraceRecorder
    completion: FakeCompletion
    embedder: FakeEmbedder
    cache: InProcessCache
    services: Services

    async def settle(self) -> None:
        await self.sink.drain(timeout=5.0)

    async def close(self) -> None:
        await self.sink.close()
        await self.client.close()


def sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def make_config(**overrides: Any) -> FeatureConfig:
    base = FeatureConfig(
        tracing_enabled=True,
        retry_backoff_ms=0,
        worker_poll_interval_ms=20,
        worker_health_interval_ms=60000,
        worker_shutdown_grace_ms=1000,
    )
    return replace(base, **overrides)


@pytest_asyncio.fixture
async def make_stack(tmp_path: Path):
    created: List[Stack] = []

    async def _factory(
        *,
        replies: Optional[Dict[str, Reply]] = None,
        fail_embedding_on: Tuple[str, ...] = (),
        db_name: str = "flywheel.db",
        **config_overrides: Any,
    ) -> Stack:
        config = make_config(**config_overrides)
        client = SQLiteClient(sqlite_url(tmp_path / db_name))
        await client.init_db()
        sink = BackgroundSink()
        tracer = TraceRecorder(enabled=True, sink=sink)
        completion = FakeCompletion(replies)
        embedder = FakeEmbedder(fail_on=fail_embedding_on)
        cache = InProcessCache()
        services = build_services(
            client,
            config,
            sink=sink,
            tracer=tracer,
            completion=completion,
            embedder=embedder,
            cache=cache,
        )
        stack = Stack(
            client=client,
            config=config,
            sink=sink,
            tracer=tracer,
            completion=completion,
            embedder=embedder,
            cache=cache,
            services=services,
        )
        created.append(stack)
        return stack

    yield _factory

    for stack in created:
        await stack.close()
