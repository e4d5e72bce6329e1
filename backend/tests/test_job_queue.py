import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from db.job_queue import JobQueue
from db.models import JobStatus, JobType, _utc_now_naive
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _queue(tmp_path: Path, max_attempts: int = 3):
    client = SQLiteClient(_sqlite_url(tmp_path / "jobs.db"))
    await client.init_db()
    return client, JobQueue(client, default_max_attempts=max_attempts)


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_fifo(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path)
    try:
        low_first = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-a", {}, priority=0)
        high = await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"}, priority=10)
        low_second = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-b", {}, priority=0)

        claimed = await queue.claim_next(limit=3)

        assert [job.id for job in claimed] == [high, low_first, low_second]
        assert all(job.status == JobStatus.PROCESSING.value for job in claimed)
        assert all(job.started_at is not None for job in claimed)
        assert await queue.claim_next(limit=3) == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path)
    try:
        job_ids = {
            await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": f"b{i}"})
            for i in range(6)
        }

        batches = await asyncio.gather(*(queue.claim_next(limit=6) for _ in range(4)))

        claimed = [job.id for batch in batches for job in batch]
        assert len(claimed) == len(set(claimed))
        assert set(claimed) == job_ids
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fail_counts_attempts_and_requeue_stops_at_max(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path, max_attempts=2)
    try:
        job_id = await queue.enqueue(JobType.DETECT_RELATIONS, "user-a", {"block_id": "b1"})

        [job] = await queue.claim_next()
        assert await queue.fail(job.id, "llm timeout") is True
        first = await queue.get_job(job_id)
        assert first.attempts == 1
        assert first.is_terminal is False
        assert await queue.requeue(job_id) is True

        [job] = await queue.claim_next()
        assert await queue.fail(job.id, "llm timeout again") is True
        second = await queue.get_job(job_id)
        assert second.attempts == 2
        assert second.is_terminal is True
        assert second.error_message == "llm timeout again"

        assert await queue.requeue(job_id) is False
        assert await queue.claim_next() == []
        assert (await queue.get_job(job_id)).status == JobStatus.FAILED.value
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transitions_require_expected_source_state(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path)
    try:
        job_id = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-a")

        assert await queue.complete(job_id) is False
        assert await queue.fail(job_id, "not running") is False
        assert await queue.requeue(job_id) is False

        await queue.claim_next()
        assert await queue.cancel(job_id) is False
        assert await queue.complete(job_id, duration_ms=42) is True

        done = await queue.get_job(job_id)
        assert done.status == JobStatus.COMPLETED.value
        assert done.processing_time_ms == 42
        assert done.completed_at is not None
        assert await queue.fail(job_id, "late failure") is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_cancel_deletes_pending_job(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path)
    try:
        job_id = await queue.enqueue(JobType.SYNTHESIZE_CONTEXT, "user-a", {"query": "sleep"})

        assert await queue.cancel(job_id) is True
        assert await queue.get_job(job_id) is None
        assert await queue.cancel(job_id) is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stats_failed_listing_and_retry_all(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path, max_attempts=1)
    try:
        await queue.enqueue(JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b1"})
        retryable = await queue.enqueue(
            JobType.ENRICH_AND_EMBED, "user-a", {"block_id": "b2"}, max_attempts=3
        )
        await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-b")

        claimed = await queue.claim_next(limit=2)
        for job in claimed:
            await queue.fail(job.id, "boom")

        stats = await queue.stats()
        assert stats["failed"] == 2
        assert stats["pending"] == 1
        assert stats["terminal_failed"] == 1
        assert stats["total"] == 3

        terminal = await queue.get_failed_jobs(terminal_only=True)
        assert len(terminal) == 1
        assert terminal[0].id != retryable

        assert await queue.retry_all_failed() == 1
        assert (await queue.get_job(retryable)).status == JobStatus.PENDING.value

        user_jobs = await queue.get_user_jobs("user-a")
        assert {job.user_id for job in user_jobs} == {"user-a"}
        assert len(user_jobs) == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_cleanup_old_keeps_failed_and_recent(tmp_path: Path) -> None:
    client, queue = await _queue(tmp_path, max_attempts=1)
    try:
        done_id = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-a")
        failed_id = await queue.enqueue(JobType.WEEKLY_SUMMARY, "user-b")
        for job in await queue.claim_next(limit=2):
            if job.id == done_id:
                await queue.complete(job.id)
            else:
                await queue.fail(job.id, "boom")

        assert await queue.cleanup_old(_utc_now_naive() - timedelta(days=7)) == 0
        assert await queue.cleanup_old(_utc_now_naive() + timedelta(seconds=1)) == 1

        assert await queue.get_job(done_id) is None
        assert (await queue.get_job(failed_id)).status == JobStatus.FAILED.value
    finally:
        await client.close()
