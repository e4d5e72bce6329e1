"""
Runtime state for the memory flywheel process.

This module provides:
1) BackgroundSink: fire-and-forget execution of best-effort side effects.
2) TraceRecorder: in-process observability sink with optional HTTP forwarding.
3) WorkerRuntime: polls the durable job queue with bounded concurrency,
   per-job timeouts, backoff retries, health reports and graceful drain.
4) RuntimeState: wires the services together for the API and worker entrypoints.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import httpx

from cache import build_cache
from config import FeatureConfig
from context_integrator import ContextIntegrator
from db.job_queue import Job, JobQueue
from db.models import JobType, _utc_now_naive
from llm_client import CompletionClient, EmbeddingClient
from master_agent import MasterAgent
from memory_service import MemoryService
from nudge_engine import NudgeEngine

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobTimeoutError(RuntimeError):
    """A job did not finish within the worker's per-job timeout."""


class JobAbandonedError(RuntimeError):
    """A job was still running when the worker stopped or died."""


class BackgroundSink:
    """
    Runs side-effect coroutines without the caller awaiting them.

    Failures are logged and counted; they never reach the submitter.
    """

    def __init__(self, max_pending: int = 1000) -> None:
        self._max_pending = max(1, int(max_pending))
        self._tasks: Set[asyncio.Task] = set()
        self._submitted_total = 0
        self._failed_total = 0
        self._dropped_total = 0
        self._last_error: Optional[str] = None

    def submit(self, coro: Awaitable[Any], *, label: str = "side_effect") -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._discard(coro, label, "no running event loop")
            return False
        if len(self._tasks) >= self._max_pending:
            self._discard(coro, label, "sink is full")
            return False
        task = loop.create_task(coro, name=f"sink:{label}")
        self._tasks.add(task)
        self._submitted_total += 1
        task.add_done_callback(lambda done: self._on_done(done, label))
        return True

    def _discard(self, coro: Awaitable[Any], label: str, reason: str) -> None:
        if inspect.iscoroutine(coro):
            coro.close()
        self._dropped_total += 1
        logger.warning("Dropped background side effect %s: %s", label, reason)

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failed_total += 1
            self._last_error = f"{label}: {exc}"
            logger.warning("Background side effect %s failed: %s", label, exc)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for everything submitted so far. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if remaining == 0.0:
                return False
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and time.monotonic() >= deadline:
                return False
        return True

    async def close(self, timeout: float = 5.0) -> None:
        if not await self.drain(timeout=timeout):
            for task in list(self._tasks):
                task.cancel()

    def status(self) -> Dict[str, Any]:
        return {
            "pending": len(self._tasks),
            "submitted": self._submitted_total,
            "failed": self._failed_total,
            "dropped": self._dropped_total,
            "last_error": self._last_error,
        }


@dataclass
class TraceEvent:
    timestamp: str
    name: str
    user_id: Optional[str]
    payload: Dict[str, Any]


class TraceRecorder:
    """In-process trace/score sink. Emission is synchronous, cheap and never raises."""

    def __init__(
        self,
        *,
        enabled: bool,
        sink: BackgroundSink,
        endpoint_url: str = "",
        max_events: int = 300,
        timeout_sec: float = 5.0,
    ) -> None:
        self._enabled = bool(enabled)
        self._sink = sink
        self._endpoint_url = (endpoint_url or "").strip()
        self._timeout_sec = timeout_sec
        self._max_events = max(10, int(max_events))
        self._events: Deque[TraceEvent] = deque(maxlen=self._max_events)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def emit(self, name: str, *, user_id: Optional[str] = None, **payload: Any) -> None:
        if not self._enabled:
            return
        try:
            event = TraceEvent(
                timestamp=_utc_iso_now(),
                name=(name or "unknown").strip() or "unknown",
                user_id=user_id,
                payload=dict(payload),
            )
            self._events.append(event)
            if self._endpoint_url:
                self._sink.submit(self._forward(event), label=f"trace:{event.name}")
        except Exception as exc:  # observability must not affect callers
            logger.debug("Trace emission failed for %s: %s", name, exc)

    async def _forward(self, event: TraceEvent) -> None:
        body = {
            "timestamp": event.timestamp,
            "name": event.name,
            "user_id": event.user_id,
            "payload": event.payload,
        }
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_sec)) as client:
            response = await client.post(self._endpoint_url, json=body)
            response.raise_for_status()

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        snapshot = list(self._events)[-max(1, int(limit)):]
        return [
            {
                "timestamp": item.timestamp,
                "name": item.name,
                "user_id": item.user_id,
                "payload": dict(item.payload),
            }
            for item in snapshot
        ]

    def summary(self) -> Dict[str, Any]:
        snapshot = list(self._events)
        return {
            "enabled": self._enabled,
            "window_size": self._max_events,
            "total_events": len(snapshot),
            "name_breakdown": dict(Counter(item.name for item in snapshot)),
            "last_event_at": snapshot[-1].timestamp if snapshot else None,
        }


class WorkerRuntime:
    """Polls the job queue and executes claimed jobs concurrently."""

    _LOOP_ERROR_BACKOFF_SECONDS = 5.0

    def __init__(
        self,
        *,
        queue: JobQueue,
        memory_service: MemoryService,
        config: FeatureConfig,
        maintenance: Optional[Callable[[], Awaitable[Dict[str, Any]]]] = None,
    ) -> None:
        self._queue = queue
        self._memory = memory_service
        self._config = config
        self._maintenance = maintenance

        self._poll_interval = config.worker_poll_interval_ms / 1000.0
        self._max_concurrent = max(1, config.worker_max_concurrent_jobs)
        self._job_timeout = config.worker_job_timeout_ms / 1000.0
        self._health_interval = config.worker_health_interval_ms / 1000.0
        self._backoff_base = config.retry_backoff_ms / 1000.0
        self._retention = timedelta(days=config.job_retention_days)

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._in_flight_jobs: Dict[str, Job] = {}
        self._runner: Optional[asyncio.Task] = None
        self._health_runner: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._guard = asyncio.Lock()

        self._started_monotonic: Optional[float] = None
        self._succeeded_total = 0
        self._failed_total = 0
        self._timed_out_total = 0
        self._retried_total = 0
        self._terminal_total = 0
        self._last_error: Optional[str] = None
        self._last_health_at: Optional[str] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def ensure_started(self) -> None:
        async with self._guard:
            if self.running:
                return
            try:
                await self.recover_stale_jobs()
            except Exception as exc:
                self._last_error = f"recover: {exc}"
                logger.exception("Could not recover stale jobs at startup")
            self._stopping.clear()
            self._started_monotonic = time.monotonic()
            self._runner = asyncio.create_task(self._run_loop(), name="memory-worker-poll")
            self._health_runner = asyncio.create_task(
                self._health_loop(), name="memory-worker-health"
            )
        logger.info(
            "Memory worker started (max_concurrent=%d, poll=%.2fs, timeout=%.1fs)",
            self._max_concurrent,
            self._poll_interval,
            self._job_timeout,
        )

    async def shutdown(self, grace_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Stop claiming, drain in-flight jobs up to the grace period, then cancel the rest."""
        grace = (
            self._config.worker_shutdown_grace_ms / 1000.0
            if grace_seconds is None
            else max(0.0, grace_seconds)
        )
        self._stopping.set()
        async with self._guard:
            loops = [task for task in (self._runner, self._health_runner) if task is not None]
            self._runner = None
            self._health_runner = None
        for task in loops:
            task.cancel()
        for task in loops:
            try:
                await task
            except asyncio.CancelledError:
                pass

        pending = dict(self._in_flight)
        abandoned = 0
        if pending:
            logger.info("Waiting up to %.1fs for %d in-flight jobs", grace, len(pending))
            _, still_running = await asyncio.wait(set(pending.values()), timeout=grace)
            if still_running:
                abandoned = len(still_running)
                logger.warning("Forcing exit with %d jobs still running", abandoned)
                jobs = [
                    self._in_flight_jobs[job_id]
                    for job_id, task in pending.items()
                    if task in still_running and job_id in self._in_flight_jobs
                ]
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                # Cancelled jobs are failed so they count an attempt and stay retryable.
                for job in jobs:
                    await self._handle_failure(
                        job,
                        JobAbandonedError(f"job {job.id} still running at shutdown"),
                        backoff=False,
                    )
        logger.info("Memory worker stopped")
        return {"drained": abandoned == 0, "abandoned": abandoned}

    async def recover_stale_jobs(self, started_before: Optional[datetime] = None) -> Dict[str, int]:
        """
        Fail and requeue jobs stuck in `processing` by a worker that died.

        The default cutoff is one job timeout plus the shutdown grace, so a
        claim still inside its time budget is left alone.
        """
        if started_before is None:
            budget = self._job_timeout + self._config.worker_shutdown_grace_ms / 1000.0
            started_before = _utc_now_naive() - timedelta(seconds=budget)
        stale = await self._queue.fail_stale_processing(
            started_before, "JobAbandonedError: worker stopped before recording an outcome"
        )
        requeued = 0
        for job in stale:
            if await self._after_failure(job, backoff=False):
                requeued += 1
        return {"failed": len(stale), "requeued": requeued}

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Claim and execute until the queue has nothing runnable. Returns jobs executed."""
        executed = 0
        for _ in range(max(1, int(max_rounds))):
            jobs = await self._queue.claim_next(self._max_concurrent)
            if not jobs:
                break
            await asyncio.gather(*(self._run_job(job) for job in jobs))
            executed += len(jobs)
        return executed

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                capacity = self._max_concurrent - len(self._in_flight)
                if capacity <= 0:
                    await self._pause(self._poll_interval)
                    continue
                jobs = await self._queue.claim_next(capacity)
                for job in jobs:
                    task = asyncio.create_task(self._run_job(job), name=f"memory-job-{job.id}")
                    self._in_flight[job.id] = task
                    self._in_flight_jobs[job.id] = job
                    task.add_done_callback(
                        lambda _done, job_id=job.id: self._forget(job_id)
                    )
                if not jobs:
                    await self._pause(self._poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = f"poll: {exc}"
                logger.exception("Worker poll loop error")
                await self._pause(self._LOOP_ERROR_BACKOFF_SECONDS)

    def _forget(self, job_id: str) -> None:
        self._in_flight.pop(job_id, None)
        self._in_flight_jobs.pop(job_id, None)

    async def _run_job(self, job: Job) -> None:
        started = time.monotonic()
        logger.info(
            "Processing %s job %s (attempt %d/%d)",
            job.job_type.value,
            job.id,
            job.attempts + 1,
            job.max_attempts,
        )
        execution = asyncio.create_task(self._execute_job(job), name=f"memory-exec-{job.id}")
        # A timed-out execution keeps running detached; its outcome is only logged.
        execution.add_done_callback(self._consume_abandoned)
        done, _ = await asyncio.wait({execution}, timeout=self._job_timeout)
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            if not done:
                self._timed_out_total += 1
                raise JobTimeoutError(
                    f"job {job.id} exceeded {self._job_timeout:.1f}s timeout"
                )
            execution.result()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._handle_failure(job, exc)
            return
        try:
            await self._queue.complete(job.id, duration_ms)
            self._succeeded_total += 1
            logger.info("Completed %s job %s in %dms", job.job_type.value, job.id, duration_ms)
        except Exception as exc:
            self._last_error = f"complete {job.id}: {exc}"
            logger.exception("Could not mark job %s completed", job.id)

    @staticmethod
    def _consume_abandoned(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Job execution task ended with %s", exc)

    async def _execute_job(self, job: Job) -> Dict[str, Any]:
        service = self._memory
        payload = job.payload or {}
        if job.job_type is JobType.ENRICH_AND_EMBED:
            block_id = str(payload.get("block_id") or "")
            if payload.get("retry_of"):
                result = service.enrich_and_embed_block(block_id, retry=True)
            else:
                result = service.enrich_and_embed_block(block_id)
        elif job.job_type is JobType.DETECT_RELATIONS:
            result = service.detect_relations_for_block(
                str(payload.get("block_id") or ""), user_id=job.user_id
            )
        elif job.job_type is JobType.SYNTHESIZE_CONTEXT:
            result = service.prewarm_context(
                user_id=job.user_id,
                query=str(payload.get("query") or ""),
                target_feature=str(payload.get("target_feature") or "chat"),
            )
        elif job.job_type is JobType.WEEKLY_SUMMARY:
            result = service.generate_weekly_summary(job.user_id)
        else:
            raise ValueError(f"Unknown job type '{job.job_type}'.")

        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, dict):
            return result
        return {"result": result}

    async def _handle_failure(self, job: Job, exc: BaseException, backoff: bool = True) -> None:
        message = f"{type(exc).__name__}: {exc}"
        self._failed_total += 1
        self._last_error = f"{job.id}: {message}"
        logger.error("Job %s (%s) failed: %s", job.id, job.job_type.value, message)
        try:
            if not await self._queue.fail(job.id, message):
                logger.info("Job %s already left processing; failure not recorded", job.id)
                return
        except Exception:
            logger.exception("Could not mark job %s failed", job.id)
            return
        await self._after_failure(job, backoff=backoff)

    async def _after_failure(self, job: Job, backoff: bool = True) -> bool:
        """Requeue a failed job that has attempts left, or settle it as terminal."""
        attempts_used = job.attempts + 1
        if attempts_used < job.max_attempts:
            delay = self._backoff_base * attempts_used if backoff else 0.0
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                if await self._queue.requeue(job.id):
                    self._retried_total += 1
                    logger.info("Requeued job %s after %.2fs backoff", job.id, delay)
                    return True
            except Exception:
                logger.exception("Could not requeue job %s", job.id)
            return False

        self._terminal_total += 1
        logger.error("Job %s exhausted %d attempts", job.id, job.max_attempts)
        if job.job_type is JobType.ENRICH_AND_EMBED:
            block_id = str((job.payload or {}).get("block_id") or "")
            try:
                await self._memory.mark_enrichment_failed(block_id)
            except Exception:
                logger.exception("Could not mark block %s failed", block_id)
        return False

    async def _health_loop(self) -> None:
        while not self._stopping.is_set():
            await self._pause(self._health_interval)
            if self._stopping.is_set():
                break
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = f"health: {exc}"
                logger.exception("Worker health check failed")

    async def run_maintenance(self) -> Dict[str, Any]:
        report = await self.health_report()
        logger.info(
            "Worker health: in_flight=%d uptime=%ss queue=%s",
            report["in_flight"],
            report["uptime_seconds"],
            report["queue"],
        )
        cutoff = _utc_now_naive() - self._retention
        removed = await self._queue.cleanup_old(cutoff)
        recovered = await self.recover_stale_jobs()
        extra: Dict[str, Any] = {}
        if self._maintenance is not None:
            extra = await self._maintenance()
        return {"health": report, "cleaned_jobs": removed, "recovered_jobs": recovered, **extra}

    async def health_report(self) -> Dict[str, Any]:
        stats = await self._queue.stats()
        uptime = (
            int(time.monotonic() - self._started_monotonic)
            if self._started_monotonic is not None
            else 0
        )
        self._last_health_at = _utc_iso_now()
        return {
            "running": self.running,
            "in_flight": len(self._in_flight),
            "max_concurrent": self._max_concurrent,
            "uptime_seconds": uptime,
            "queue": stats,
            "totals": {
                "succeeded": self._succeeded_total,
                "failed": self._failed_total,
                "timed_out": self._timed_out_total,
                "retried": self._retried_total,
                "terminal": self._terminal_total,
            },
            "last_error": self._last_error,
            "checked_at": self._last_health_at,
        }


@dataclass
class Services:
    client: Any
    queue: JobQueue
    cache: Any
    memory: MemoryService
    integrator: ContextIntegrator
    nudges: NudgeEngine
    agent: MasterAgent


def build_services(
    client: Any,
    config: FeatureConfig,
    *,
    sink: BackgroundSink,
    tracer: TraceRecorder,
    completion: Any = None,
    embedder: Any = None,
    cache: Any = None,
) -> Services:
    completion = completion if completion is not None else CompletionClient.from_config(config)
    embedder = embedder if embedder is not None else EmbeddingClient.from_config(config)
    cache = cache if cache is not None else build_cache(config)
    queue = JobQueue(client, default_max_attempts=config.job_max_attempts)
    memory = MemoryService(
        client=client,
        queue=queue,
        cache=cache,
        completion=completion,
        embedder=embedder,
        config=config,
        sink=sink,
        tracer=tracer,
    )
    integrator = ContextIntegrator(client=client)
    nudges = NudgeEngine(client=client, completion=completion, config=config, tracer=tracer)
    agent = MasterAgent(
        client=client,
        integrator=integrator,
        engine=nudges,
        config=config,
        sink=sink,
        tracer=tracer,
    )
    return Services(
        client=client,
        queue=queue,
        cache=cache,
        memory=memory,
        integrator=integrator,
        nudges=nudges,
        agent=agent,
    )


class RuntimeState:
    def __init__(self, config: Optional[FeatureConfig] = None) -> None:
        self.config = config or FeatureConfig.from_env()
        self.sink = BackgroundSink()
        self.tracer = TraceRecorder(
            enabled=self.config.tracing_enabled,
            sink=self.sink,
            endpoint_url=self.config.trace_sink_url,
        )
        self.services: Optional[Services] = None
        self.worker: Optional[WorkerRuntime] = None
        self._guard = asyncio.Lock()

    async def ensure_started(
        self, client_factory: Callable[[], Any], *, start_worker: Optional[bool] = None
    ) -> Services:
        async with self._guard:
            if self.services is None:
                self.services = build_services(
                    client_factory(), self.config, sink=self.sink, tracer=self.tracer
                )
            services = self.services
            if self.worker is None:
                self.worker = WorkerRuntime(
                    queue=services.queue,
                    memory_service=services.memory,
                    config=self.config,
                    maintenance=services.agent.run_maintenance,
                )
            worker = self.worker
        should_start = self.config.worker_enabled if start_worker is None else start_worker
        if should_start:
            await worker.ensure_started()
        return services

    async def status(self) -> Dict[str, Any]:
        worker_report: Dict[str, Any] = {"running": False}
        if self.worker is not None:
            worker_report = await self.worker.health_report()
        return {
            "worker": worker_report,
            "sink": self.sink.status(),
            "tracing": self.tracer.summary(),
        }

    async def shutdown(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"drained": True}
        if self.worker is not None:
            result = await self.worker.shutdown()
        await self.sink.close()
        if self.services is not None:
            close = getattr(self.services.cache, "close", None)
            if callable(close):
                await close()
        self.services = None
        self.worker = None
        return result


runtime_state = RuntimeState()
