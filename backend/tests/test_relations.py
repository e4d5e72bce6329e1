from datetime import datetime

import pytest

from llm_client import CompletionError
from prompts import RELATION_SYSTEM

FIRST_NOTE = "Anxious about my job interview tomorrow"
SECOND_NOTE = "The interview went fine, I feel relieved"


async def _active_block(memory, content: str, *, user_id: str = "user-a"):
    block = await memory.ingest_minimal(
        user_id=user_id, block_type="journal_entry", source_feature="journal", content=content
    )
    result = await memory.enrich_and_embed_block(block["id"])
    return block, result


@pytest.mark.asyncio
async def test_relations_disabled_is_a_noop(make_stack) -> None:
    stack = await make_stack()
    block, enriched = await _active_block(stack.services.memory, FIRST_NOTE)

    result = await stack.services.memory.detect_relations_for_block(block["id"])

    assert enriched["relation_job_id"] is None
    assert result["skipped"] == "relations_disabled"
    assert stack.completion.calls_for(RELATION_SYSTEM) == []


@pytest.mark.asyncio
async def test_new_block_is_linked_to_earlier_blocks(make_stack) -> None:
    stack = await make_stack(relations_enabled=True)
    memory = stack.services.memory
    first, first_enriched = await _active_block(memory, FIRST_NOTE)
    second, second_enriched = await _active_block(memory, SECOND_NOTE)

    assert first_enriched["relation_job_id"] is not None
    assert second_enriched["relation_job_id"] is not None

    result = await memory.detect_relations_for_block(second["id"], user_id="user-a")

    assert result == {"block_id": second["id"], "compared": 1, "created": 1, "failed": 0}
    [prompt] = stack.completion.calls_for(RELATION_SYSTEM)
    assert prompt.count("Worried about tomorrow's job interview.") == 2
    assert await stack.client.count_relations(user_id="user-a") == 1

    again = await memory.detect_relations_for_block(second["id"])
    assert again["created"] == 0
    assert await stack.client.count_relations(user_id="user-a") == 1


@pytest.mark.asyncio
async def test_quota_exhaustion_stops_enqueue_and_detection(make_stack) -> None:
    stack = await make_stack(relations_enabled=True, relation_rate_limit=5)
    memory = stack.services.memory
    first, _ = await _active_block(memory, FIRST_NOTE)
    for _ in range(5):
        assert await stack.client.try_consume_relation_quota(user_id="user-a", limit=5)
    assert not await stack.client.try_consume_relation_quota(user_id="user-a", limit=5)

    second, enriched = await _active_block(memory, SECOND_NOTE)
    result = await memory.detect_relations_for_block(second["id"])

    assert enriched["relation_job_id"] is None
    assert result["skipped"] == "quota_exceeded"
    assert stack.completion.calls_for(RELATION_SYSTEM) == []
    assert await stack.client.get_relation_quota_used(user_id="user-a") == 5


@pytest.mark.asyncio
async def test_quota_windows_are_hourly_and_purgeable(make_stack) -> None:
    stack = await make_stack()
    client = stack.client
    ten_past = datetime(2026, 3, 2, 9, 10)
    fifty_past = datetime(2026, 3, 2, 9, 50)
    next_hour = datetime(2026, 3, 2, 10, 5)

    assert await client.try_consume_relation_quota(user_id="user-a", limit=1, now=ten_past)
    assert not await client.try_consume_relation_quota(user_id="user-a", limit=1, now=fifty_past)
    assert await client.try_consume_relation_quota(user_id="user-a", limit=1, now=next_hour)
    assert await client.try_consume_relation_quota(user_id="user-b", limit=1, now=fifty_past)

    assert await client.purge_relation_quota(before=datetime(2026, 3, 2, 10, 0)) == 2
    assert await client.get_relation_quota_used(user_id="user-a", now=next_hour) == 1


@pytest.mark.asyncio
async def test_store_rejects_self_loops_and_cross_owner_edges(make_stack) -> None:
    stack = await make_stack()
    memory = stack.services.memory
    mine, _ = await _active_block(memory, FIRST_NOTE, user_id="user-a")
    theirs, _ = await _active_block(memory, SECOND_NOTE, user_id="user-b")

    self_loop = await stack.client.create_relation(
        user_id="user-a",
        source_block_id=mine["id"],
        target_block_id=mine["id"],
        relation_type="supports",
    )
    cross_owner = await stack.client.create_relation(
        user_id="user-a",
        source_block_id=mine["id"],
        target_block_id=theirs["id"],
        relation_type="supports",
    )

    assert self_loop is None
    assert cross_owner is None
    assert await stack.client.count_relations(user_id="user-a") == 0


@pytest.mark.asyncio
async def test_excluded_blocks_are_never_candidates(make_stack) -> None:
    stack = await make_stack(relations_enabled=True)
    memory = stack.services.memory
    hidden, _ = await _active_block(memory, FIRST_NOTE)
    await memory.exclude_block("user-a", hidden["id"])
    await _active_block(memory, "Unrelated note from another user", user_id="user-b")
    newest, _ = await _active_block(memory, SECOND_NOTE)

    result = await memory.detect_relations_for_block(newest["id"])

    assert result["compared"] == 0
    assert stack.completion.calls_for(RELATION_SYSTEM) == []


@pytest.mark.asyncio
async def test_candidate_failures_are_counted_not_raised(make_stack) -> None:
    stack = await make_stack(
        relations_enabled=True, replies={RELATION_SYSTEM: CompletionError("rate limited")}
    )
    memory = stack.services.memory
    await _active_block(memory, FIRST_NOTE)
    newest, _ = await _active_block(memory, SECOND_NOTE)

    result = await memory.detect_relations_for_block(newest["id"])

    assert result["compared"] == 1
    assert result["failed"] == 1
    assert result["created"] == 0


@pytest.mark.asyncio
async def test_unknown_relation_type_is_discarded(make_stack) -> None:
    stack = await make_stack(
        relations_enabled=True,
        replies={
            RELATION_SYSTEM: {"is_related": True, "relation_type": "rhymes_with", "strength": 0.9}
        },
    )
    memory = stack.services.memory
    await _active_block(memory, FIRST_NOTE)
    newest, _ = await _active_block(memory, SECOND_NOTE)

    result = await memory.detect_relations_for_block(newest["id"])

    assert result["created"] == 0
    assert await stack.client.count_relations(user_id="user-a") == 0


@pytest.mark.asyncio
async def test_owner_mismatch_is_skipped(make_stack) -> None:
    stack = await make_stack(relations_enabled=True)
    block, _ = await _active_block(stack.services.memory, FIRST_NOTE)

    result = await stack.services.memory.detect_relations_for_block(block["id"], user_id="user-b")

    assert result["skipped"] == "owner_mismatch"
