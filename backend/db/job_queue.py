"""
Durable job queue on top of the SQLite store.

State machine:
    pending --claim--> processing --complete--> completed
    processing --fail--> failed --requeue (attempts < max)--> pending
    processing left behind by a dead worker --fail_stale_processing--> failed
    failed with attempts >= max_attempts is terminal.

Every transition is a conditional UPDATE guarded by the expected source
state, so concurrent workers sharing the database never both win a claim.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update

from .models import (
    Job as JobRow,
    JobStatus,
    JobType,
    _dump_json,
    _load_json_dict,
    _utc_now_naive,
)

logger = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 2000


class JobQueueError(RuntimeError):
    """Raised when a job cannot be written to the queue."""


@dataclass
class Job:
    id: str
    job_type: JobType
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = JobStatus.PENDING.value
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.FAILED.value and self.attempts >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type.value,
            "user_id": self.user_id,
            "payload": dict(self.payload),
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_message": self.error_message,
            "terminal": self.is_terminal,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "processing_time_ms": self.processing_time_ms,
        }


def _job_from_row(row: JobRow) -> Job:
    return Job(
        id=row.id,
        job_type=JobType(row.job_type),
        user_id=row.user_id,
        payload=_load_json_dict(row.payload),
        status=row.status,
        priority=int(row.priority or 0),
        attempts=int(row.attempts or 0),
        max_attempts=int(row.max_attempts or 0),
        error_message=row.error_message,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        processing_time_ms=row.processing_time_ms,
    )


class JobQueue:
    """Queue operations over the `memory_jobs` table of a SQLiteClient."""

    def __init__(self, client: Any, *, default_max_attempts: int = 3) -> None:
        self._client = client
        self._default_max_attempts = max(1, int(default_max_attempts))

    async def enqueue(
        self,
        job_type: JobType,
        user_id: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> str:
        job_type = JobType(job_type)
        try:
            async with self._client.session() as session:
                row = JobRow(
                    job_type=job_type.value,
                    user_id=user_id,
                    payload=_dump_json(payload or {}),
                    status=JobStatus.PENDING.value,
                    priority=int(priority),
                    attempts=0,
                    max_attempts=max(1, int(max_attempts or self._default_max_attempts)),
                )
                session.add(row)
                await session.flush()
                job_id = row.id
        except Exception as exc:
            raise JobQueueError(f"failed to enqueue {job_type.value}: {exc}") from exc
        logger.info("Enqueued %s job %s for user %s", job_type.value, job_id, user_id)
        return job_id

    async def claim_next(self, limit: int = 1) -> List[Job]:
        """
        Claim up to `limit` runnable jobs, priority desc then FIFO.

        Each candidate is claimed in its own short write transaction; a
        candidate that another worker already moved out of `pending` is skipped.
        """
        if limit <= 0:
            return []
        async with self._client.session() as session:
            rows = await session.execute(
                select(JobRow.id)
                .where(JobRow.status == JobStatus.PENDING.value)
                .where(JobRow.attempts < JobRow.max_attempts)
                .order_by(
                    JobRow.priority.desc(),
                    JobRow.created_at.asc(),
                    JobRow.id.asc(),
                )
                .limit(int(limit))
            )
            candidate_ids = list(rows.scalars().all())

        claimed: List[Job] = []
        for job_id in candidate_ids:
            async with self._client.session() as session:
                result = await session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id)
                    .where(JobRow.status == JobStatus.PENDING.value)
                    .where(JobRow.attempts < JobRow.max_attempts)
                    .values(status=JobStatus.PROCESSING.value, started_at=_utc_now_naive())
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) != 1:
                    continue
                row = await session.get(JobRow, job_id)
                if row is not None:
                    claimed.append(_job_from_row(row))
        return claimed

    async def complete(self, job_id: str, duration_ms: Optional[int] = None) -> bool:
        async with self._client.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .where(JobRow.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=_utc_now_naive(),
                    processing_time_ms=(
                        max(0, int(duration_ms)) if duration_ms is not None else None
                    ),
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def fail(self, job_id: str, error: str) -> bool:
        """Mark a processing job failed and count the attempt."""
        message = (error or "unknown error").strip()[:_ERROR_MESSAGE_LIMIT]
        async with self._client.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .where(JobRow.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.FAILED.value,
                    attempts=JobRow.attempts + 1,
                    error_message=message,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def fail_stale_processing(self, started_before: datetime, error: str) -> List[Job]:
        """
        Fail jobs left in `processing` since before the cutoff, counting the attempt.

        These are claims whose worker died or was cancelled before it could
        record an outcome. Returns the jobs as they were when claimed.
        """
        async with self._client.session() as session:
            rows = await session.execute(
                select(JobRow)
                .where(JobRow.status == JobStatus.PROCESSING.value)
                .where(JobRow.started_at < started_before)
            )
            candidates = [_job_from_row(row) for row in rows.scalars().all()]

        failed: List[Job] = []
        for job in candidates:
            if await self.fail(job.id, error):
                failed.append(job)
        if failed:
            logger.warning("Failed %d jobs stuck in processing", len(failed))
        return failed

    async def requeue(self, job_id: str) -> bool:
        """Move a failed job back to pending; refused once attempts are exhausted."""
        async with self._client.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .where(JobRow.status == JobStatus.FAILED.value)
                .where(JobRow.attempts < JobRow.max_attempts)
                .values(
                    status=JobStatus.PENDING.value,
                    error_message=None,
                    started_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            requeued = int(result.rowcount or 0) == 1
        if not requeued:
            logger.info("Job %s not requeued (missing, not failed, or attempts exhausted)", job_id)
        return requeued

    async def cancel(self, job_id: str) -> bool:
        """Delete a job that has not been claimed yet."""
        async with self._client.session() as session:
            result = await session.execute(
                delete(JobRow)
                .where(JobRow.id == job_id)
                .where(JobRow.status == JobStatus.PENDING.value)
            )
            return int(result.rowcount or 0) == 1

    async def retry_all_failed(self) -> int:
        async with self._client.session() as session:
            rows = await session.execute(
                select(JobRow.id)
                .where(JobRow.status == JobStatus.FAILED.value)
                .where(JobRow.attempts < JobRow.max_attempts)
            )
            job_ids = list(rows.scalars().all())
        retried = 0
        for job_id in job_ids:
            if await self.requeue(job_id):
                retried += 1
        if retried:
            logger.info("Requeued %d failed jobs", retried)
        return retried

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._client.session() as session:
            row = await session.get(JobRow, job_id)
            return _job_from_row(row) if row is not None else None

    async def get_user_jobs(self, user_id: str, limit: int = 50) -> List[Job]:
        async with self._client.session() as session:
            rows = await session.execute(
                select(JobRow)
                .where(JobRow.user_id == user_id)
                .order_by(JobRow.created_at.desc())
                .limit(max(1, int(limit)))
            )
            return [_job_from_row(row) for row in rows.scalars().all()]

    async def get_failed_jobs(self, limit: int = 100, terminal_only: bool = False) -> List[Job]:
        query = select(JobRow).where(JobRow.status == JobStatus.FAILED.value)
        if terminal_only:
            query = query.where(JobRow.attempts >= JobRow.max_attempts)
        query = query.order_by(JobRow.created_at.desc()).limit(max(1, int(limit)))
        async with self._client.session() as session:
            rows = await session.execute(query)
            return [_job_from_row(row) for row in rows.scalars().all()]

    async def stats(self) -> Dict[str, int]:
        async with self._client.session() as session:
            rows = await session.execute(
                select(JobRow.status, func.count()).group_by(JobRow.status)
            )
            counts = {str(status): int(count) for status, count in rows.all()}
            terminal = await session.scalar(
                select(func.count())
                .select_from(JobRow)
                .where(JobRow.status == JobStatus.FAILED.value)
                .where(JobRow.attempts >= JobRow.max_attempts)
            )
        payload = {status.value: counts.get(status.value, 0) for status in JobStatus}
        payload["terminal_failed"] = int(terminal or 0)
        payload["total"] = sum(counts.values())
        return payload

    async def cleanup_old(self, completed_before: datetime) -> int:
        """Purge completed jobs finished before the cutoff. Failed jobs are kept."""
        async with self._client.session() as session:
            result = await session.execute(
                delete(JobRow)
                .where(JobRow.status == JobStatus.COMPLETED.value)
                .where(JobRow.completed_at < completed_before)
            )
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Cleaned up %d completed jobs", removed)
        return removed
