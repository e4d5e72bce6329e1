import asyncio
from datetime import timedelta

import pytest

from db.models import JobStatus, JobType, _utc_now_naive
from llm_client import EmbeddingError
from runtime_state import BackgroundSink, RuntimeState, TraceRecorder, WorkerRuntime


class _ScriptedMemory:
    """Stands in for MemoryService; each enrichment call pops the next outcome."""

    def __init__(self, outcomes=None, *, gate: asyncio.Event = None, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.delay = delay
        self.calls = []
        self.failed_blocks = []

    async def enrich_and_embed_block(self, block_id):
        self.calls.append(block_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else {"block_id": block_id, "status": "active"}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def mark_enrichment_failed(self, block_id):
        self.failed_blocks.append(block_id)
        return True

    async def generate_weekly_summary(self, user_id):
        return {"user_id": user_id, "skipped": "no_activity"}


def _worker(stack, memory, **overrides) -> WorkerRuntime:
    return WorkerRuntime(
        queue=stack.services.queue,
        memory_service=memory,
        config=stack.config,
        **overrides,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_run_until_idle_drives_the_whole_pipeline(make_stack) -> None:
    stack = await make_stack(relations_enabled=True)
    memory = stack.services.memory
    first = await memory.ingest_minimal(
        user_id="user-a", block_type="journal_entry", source_feature="journal", content="Anxious about my job interview"
    )
    second = await memory.ingest_minimal(
        user_id="user-a", block_type="message", source_feature="chat", content="The interview went fine"
    )
    worker = _worker(stack, memory)

    executed = await worker.run_until_idle()

    assert executed == 4
    for block in (first, second):
        assert (await stack.client.get_block(block["id"]))["status"] == "active"
    stats = await stack.services.queue.stats()
    assert stats["completed"] == 4
    assert stats["pending"] == 0
    report = await worker.health_report()
    assert report["totals"]["succeeded"] == 4
    assert report["running"] is False


@pytest.mark.asyncio
async def test_failed_job_is_retried_after_backoff(make_stack) -> None:
    stack = await make_stack(job_max_attempts=3, retry_backoff_ms=10)
    memory = _ScriptedMemory([EmbeddingError("provider 503")])
    job_id = await stack.services.queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})
    worker = _worker(stack, memory)

    assert await worker.run_until_idle() == 2

    job = await stack.services.queue.get_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    totals = (await worker.health_report())["totals"]
    assert totals["failed"] == 1
    assert totals["retried"] == 1
    assert totals["succeeded"] == 1
    assert memory.calls == ["b1", "b1"]


@pytest.mark.asyncio
async def test_timed_out_job_fails_and_stays_failed_when_exhausted(make_stack) -> None:
    stack = await make_stack(job_max_attempts=1, worker_job_timeout_ms=50)
    gate = asyncio.Event()
    memory = _ScriptedMemory(gate=gate)
    job_id = await stack.services.queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})
    worker = _worker(stack, memory)

    try:
        assert await worker.run_until_idle() == 1
    finally:
        gate.set()
        await asyncio.sleep(0)

    job = await stack.services.queue.get_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.is_terminal
    assert "JobTimeoutError" in job.error_message
    assert memory.failed_blocks == ["b1"]
    totals = (await worker.health_report())["totals"]
    assert totals["timed_out"] == 1
    assert totals["terminal"] == 1


@pytest.mark.asyncio
async def test_exhausted_enrichment_marks_block_failed(make_stack) -> None:
    stack = await make_stack(job_max_attempts=2, fail_embedding_on=("interview",))
    memory = stack.services.memory
    block = await memory.ingest_minimal(
        user_id="user-a", block_type="journal_entry", source_feature="journal", content="My interview is tomorrow"
    )
    worker = _worker(stack, memory)

    assert await worker.run_until_idle() == 2

    stored = await stack.client.get_block(block["id"])
    assert stored["status"] == "failed"
    job = await stack.services.queue.get_job(block["enrichment_job_id"])
    assert job.attempts == 2
    assert job.is_terminal
    assert (await stack.services.queue.stats())["terminal_failed"] == 1
    context = await memory.retrieve("user-a", "My interview is tomorrow")
    assert context.sources == []


@pytest.mark.asyncio
async def test_retried_copy_of_terminal_enrichment_reactivates_block(make_stack) -> None:
    stack = await make_stack(job_max_attempts=1, fail_embedding_on=("interview",))
    memory = stack.services.memory
    queue = stack.services.queue
    block = await memory.ingest_minimal(
        user_id="user-a", block_type="journal_entry", source_feature="journal", content="My interview is tomorrow"
    )
    worker = _worker(stack, memory)
    assert await worker.run_until_idle() == 1
    assert (await stack.client.get_block(block["id"]))["status"] == "failed"

    stack.embedder.fail_on = ()
    plain = await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": block["id"]})
    assert await worker.run_until_idle() == 1
    assert (await queue.get_job(plain)).status == JobStatus.COMPLETED.value
    assert (await stack.client.get_block(block["id"]))["status"] == "failed"

    original = block["enrichment_job_id"]
    copy_id = await queue.enqueue(
        JobType.ENRICH_AND_EMBED, "user-a", {"block_id": block["id"], "retry_of": original}
    )
    assert await worker.run_until_idle() == 1

    assert (await queue.get_job(copy_id)).status == JobStatus.COMPLETED.value
    stored = await stack.client.get_block(block["id"], include_embedding=True)
    assert stored["status"] == "active"
    assert stored["embedding"]
    assert (await queue.get_job(original)).is_terminal
    context = await memory.retrieve("user-a", "My interview is tomorrow")
    assert [source["block_id"] for source in context.sources] == [block["id"]]


@pytest.mark.asyncio
async def test_polling_worker_drains_on_shutdown(make_stack) -> None:
    stack = await make_stack()
    memory = _ScriptedMemory(delay=0.1)
    worker = _worker(stack, memory)
    job_id = await stack.services.queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})

    await worker.ensure_started()
    await _wait_for(lambda: memory.calls)
    result = await worker.shutdown(grace_seconds=2.0)

    assert result == {"drained": True, "abandoned": 0}
    assert worker.running is False
    assert (await stack.services.queue.get_job(job_id)).status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_shutdown_abandons_jobs_past_grace(make_stack) -> None:
    stack = await make_stack()
    gate = asyncio.Event()
    memory = _ScriptedMemory(gate=gate)
    worker = _worker(stack, memory)
    job_id = await stack.services.queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})

    await worker.ensure_started()
    await _wait_for(lambda: memory.calls)
    try:
        result = await worker.shutdown(grace_seconds=0.05)
    finally:
        gate.set()
        await asyncio.sleep(0)

    assert result == {"drained": False, "abandoned": 1}
    job = await stack.services.queue.get_job(job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1

    fresh = _worker(stack, _ScriptedMemory())
    assert await fresh.run_until_idle() == 1
    assert (await stack.services.queue.get_job(job_id)).status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_abandoned_job_on_last_attempt_is_left_failed(make_stack) -> None:
    stack = await make_stack(job_max_attempts=1)
    gate = asyncio.Event()
    memory = _ScriptedMemory(gate=gate)
    worker = _worker(stack, memory)
    job_id = await stack.services.queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})

    await worker.ensure_started()
    await _wait_for(lambda: memory.calls)
    try:
        await worker.shutdown(grace_seconds=0.05)
    finally:
        gate.set()
        await asyncio.sleep(0)

    job = await stack.services.queue.get_job(job_id)
    assert job.is_terminal
    assert "JobAbandonedError" in job.error_message
    assert memory.failed_blocks == ["b1"]
    assert [failed.id for failed in await stack.services.queue.get_failed_jobs()] == [job_id]


@pytest.mark.asyncio
async def test_stale_processing_jobs_are_recovered(make_stack) -> None:
    stack = await make_stack(job_max_attempts=2)
    queue = stack.services.queue
    retryable = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-a", priority=5)
    exhausted = await queue.enqueue(
        JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b9"}, max_attempts=1
    )
    claimed = await queue.claim_next(2)
    assert {job.id for job in claimed} == {retryable, exhausted}
    memory = _ScriptedMemory()
    worker = _worker(stack, memory)

    assert await worker.recover_stale_jobs() == {"failed": 0, "requeued": 0}
    recovered = await worker.recover_stale_jobs(
        started_before=_utc_now_naive() + timedelta(seconds=1)
    )

    assert recovered == {"failed": 2, "requeued": 1}
    first = await queue.get_job(retryable)
    assert first.status == JobStatus.PENDING.value
    assert first.attempts == 1
    assert (await queue.get_job(exhausted)).is_terminal
    assert memory.failed_blocks == ["b9"]
    assert await worker.run_until_idle() == 1


@pytest.mark.asyncio
async def test_run_maintenance_cleans_and_calls_hook(make_stack) -> None:
    stack = await make_stack(job_retention_days=0)
    calls = []

    async def _hook():
        calls.append(True)
        return {"expired_nudges_removed": 0}

    worker = _worker(stack, _ScriptedMemory(), maintenance=_hook)
    await stack.services.queue.enqueue(JobType.WEEKLY_SUMMARY, "user-a")
    [job] = await stack.services.queue.claim_next()
    await stack.services.queue.complete(job.id)
    await asyncio.sleep(0.01)

    report = await worker.run_maintenance()

    assert report["cleaned_jobs"] == 1
    assert report["recovered_jobs"] == {"failed": 0, "requeued": 0}
    assert report["expired_nudges_removed"] == 0
    assert report["health"]["queue"]["completed"] == 1
    assert (await stack.services.queue.stats())["total"] == 0
    assert calls == [True]


@pytest.mark.asyncio
async def test_runtime_state_wires_services_without_worker(make_stack) -> None:
    stack = await make_stack()
    state = RuntimeState(stack.config)

    services = await state.ensure_started(lambda: stack.client, start_worker=False)
    again = await state.ensure_started(lambda: stack.client, start_worker=False)
    status = await state.status()

    assert again is services
    assert services.client is stack.client
    assert status["worker"]["running"] is False
    assert status["sink"]["pending"] == 0
    assert status["tracing"]["enabled"] is True
    assert (await state.shutdown())["drained"] is True


def test_sink_without_loop_drops_and_tracer_never_raises() -> None:
    sink = BackgroundSink()

    async def _side_effect():
        return None

    assert sink.submit(_side_effect(), label="orphan") is False
    assert sink.status()["dropped"] == 1

    tracer = TraceRecorder(enabled=True, sink=sink)
    tracer.emit("memory.ingest", user_id="user-a", block_id="b1")
    tracer.emit("", user_id=None)
    assert [event["name"] for event in tracer.recent()] == ["memory.ingest", "unknown"]
    assert tracer.summary()["name_breakdown"] == {"memory.ingest": 1, "unknown": 1}

    disabled = TraceRecorder(enabled=False, sink=sink)
    disabled.emit("memory.ingest")
    assert disabled.recent() == []


class _PartlyStuckMemory(_ScriptedMemory):
    """Blocks named `stuck-*` wait on the gate; the rest finish after a short delay."""

    async def enrich_and_embed_block(self, block_id):
        self.calls.append(block_id)
        if block_id.startswith("stuck"):
            await self.gate.wait()
        else:
            await asyncio.sleep(self.delay)
        return {"block_id": block_id, "status": "active"}


@pytest.mark.asyncio
async def test_shutdown_counts_only_jobs_still_running(make_stack) -> None:
    stack = await make_stack()
    gate = asyncio.Event()
    memory = _PartlyStuckMemory(gate=gate, delay=0.05)
    worker = _worker(stack, memory)
    queue = stack.services.queue
    quick = await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "quick-1"})
    stuck = await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "stuck-1"})

    await worker.ensure_started()
    await _wait_for(lambda: len(memory.calls) == 2)
    try:
        result = await worker.shutdown(grace_seconds=0.5)
    finally:
        gate.set()
        await asyncio.sleep(0)

    assert result == {"drained": False, "abandoned": 1}
    assert (await queue.get_job(quick)).status == JobStatus.COMPLETED.value
    assert (await queue.get_job(stuck)).status == JobStatus.PENDING.value
