"""
Deckforge - Background Job Processor

Per-type priority queues drained by a single polling loop, with bounded
per-type concurrency, handler timeouts and exponential-backoff retries.

Features:
- Priority ordering (higher first, FIFO among equal priorities)
- Delayed jobs promoted back to waiting when their time elapses
- Timeouts treated exactly like handler failures
- Backoff min(base * 2^(n-1), cap): 1s, 2s, 4s, ... capped at 30s
- Handler failures never escape the scheduler; see job status instead

Usage:
    processor = BackgroundJobProcessor(logger, metrics)

    async def import_deck(data, ctx):
        await ctx.update_progress(50)
        ctx.log("Parsed deck list", cards=len(data["cards"]))
        return {"imported": len(data["cards"])}

    processor.process("deck.import", import_deck, concurrency=2)
    job_id = await processor.schedule("deck.import", {"cards": [...]}, JobOptions(priority=5))
"""
from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from core.config import JobProcessorConfig
from core.errors import OperationTimeoutError, ValidationError
from core.types import BaseService, HealthState, ServiceHealthStatus
from jobs.models import (
    CANCELLABLE_STATUSES,
    Job,
    JobContext,
    JobHandler,
    JobOptions,
    JobSnapshot,
    JobStatus,
    QueueStats,
    compute_backoff,
)
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector

# (-priority, arrival sequence, job id)
QueueItem = Tuple[int, int, str]


@dataclass
class HandlerRegistration:
    handler: JobHandler
    concurrency: int


class BackgroundJobProcessor(BaseService):
    """
    In-process background job scheduler.

    Only the polling loop mutates job state after scheduling; handlers run
    as independent asyncio tasks.
    """

    name = "JobProcessor"

    def __init__(
        self,
        logger: StructuredLogger,
        metrics: MetricsCollector,
        config: Optional[JobProcessorConfig] = None,
        clock=time.monotonic,
    ):
        self.config = config or JobProcessorConfig()
        self.config.validate()
        self._logger = logger.child({"component": "jobs"})
        self._metrics = metrics
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        self._queues: Dict[str, List[QueueItem]] = {}
        self._handlers: Dict[str, HandlerRegistration] = {}
        self._active_counts: Dict[str, int] = {}
        self._active_tasks: Set[asyncio.Task[None]] = set()
        self._sequence = itertools.count()
        self._lock = threading.RLock()
        self._executor: Optional[ThreadPoolExecutor] = None

        self._loop_task: Optional[asyncio.Task[None]] = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def registered_types(self) -> List[str]:
        return list(self._handlers)

    # -------------------------------------------------------------------------
    # Queue helpers. Must be called with lock held.
    # -------------------------------------------------------------------------

    def _enqueue(self, job: Job) -> None:
        queue = self._queues.setdefault(job.type, [])
        heapq.heappush(queue, (-job.options.priority, next(self._sequence), job.id))

    def _dequeue(self, job_type: str) -> Optional[Job]:
        queue = self._queues.get(job_type)
        while queue:
            _, _, job_id = heapq.heappop(queue)
            job = self._jobs.get(job_id)
            if job is not None and job.status is JobStatus.WAITING:
                return job
        return None

    def _remove_from_queue(self, job: Job) -> None:
        queue = self._queues.get(job.type)
        if not queue:
            return
        remaining = [item for item in queue if item[2] != job.id]
        if len(remaining) != len(queue):
            heapq.heapify(remaining)
            self._queues[job.type] = remaining

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    async def schedule(
        self,
        job_type: str,
        data: Any = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Queue a job and return its id."""
        if not job_type:
            raise ValidationError("Job type is required", field="type")
        options = options or JobOptions()
        options.validate()
        options = replace(
            options,
            attempts=options.attempts or self.config.default_attempts,
            timeout=options.timeout or self.config.default_timeout,
        )

        job = Job(
            id=f"job_{uuid4().hex}",
            type=job_type,
            data=data,
            options=options,
        )

        with self._lock:
            if options.delay > 0:
                job.status = JobStatus.DELAYED
                job.next_attempt_at = self._clock() + options.delay
            self._jobs[job.id] = job
            if job.status is JobStatus.WAITING:
                self._enqueue(job)

        self._metrics.increment("jobs.scheduled", tags={"type": job_type})
        self._logger.debug(
            "Job scheduled",
            job_id=job.id,
            job_type=job_type,
            priority=options.priority,
            delay=options.delay,
        )
        return job.id

    def process(
        self,
        job_type: str,
        handler: JobHandler,
        concurrency: Optional[int] = None,
    ) -> None:
        """Register the handler for ``job_type`` and make sure the loop runs."""
        concurrency = concurrency or self.config.default_concurrency
        if concurrency < 1:
            raise ValidationError("Concurrency must be at least 1", field="concurrency")

        with self._lock:
            self._handlers[job_type] = HandlerRegistration(handler, concurrency)
            self._active_counts.setdefault(job_type, 0)

        self._logger.info("Job handler registered", job_type=job_type, concurrency=concurrency)
        self._ensure_loop()

    async def cancel(self, job_id: str) -> bool:
        """Cancel a waiting or delayed job; active and finished jobs are left alone."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in CANCELLABLE_STATUSES:
                return False
            if job.status is JobStatus.WAITING:
                self._remove_from_queue(job)
            job.status = JobStatus.FAILED
            job.error = "cancelled"
            job.next_attempt_at = None
            job.completed_at = datetime.now(timezone.utc)

        self._metrics.increment("jobs.cancelled", tags={"type": job.type})
        self._logger.info("Job cancelled", job_id=job_id, job_type=job.type)
        return True

    async def get_job_status(self, job_id: str) -> Optional[JobSnapshot]:
        """Snapshot of the job record, or None if unknown or removed."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    async def get_queue_stats(self) -> QueueStats:
        stats = QueueStats()
        with self._lock:
            for job in self._jobs.values():
                name = job.status.value
                setattr(stats, name, getattr(stats, name) + 1)
        return stats

    # -------------------------------------------------------------------------
    # Scheduling loop
    # -------------------------------------------------------------------------

    def _ensure_loop(self) -> None:
        if self._stopping or self.is_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running event loop; job loop starts on initialize")
            return
        self._loop_task = loop.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        self._logger.info("Job processing loop started")
        while not self._stopping:
            try:
                self._tick()
            except Exception as e:
                self._logger.error("Job scheduler tick failed", error=e)
            await asyncio.sleep(self.config.poll_interval)

    def _tick(self) -> None:
        """Promote due delayed jobs, then fill free handler slots."""
        now = self._clock()
        with self._lock:
            for job in list(self._jobs.values()):
                if (
                    job.status is JobStatus.DELAYED
                    and job.next_attempt_at is not None
                    and job.next_attempt_at <= now
                ):
                    job.status = JobStatus.WAITING
                    job.next_attempt_at = None
                    self._enqueue(job)

            for job_type, registration in self._handlers.items():
                while self._active_counts.get(job_type, 0) < registration.concurrency:
                    job = self._dequeue(job_type)
                    if job is None:
                        break
                    self._start_job(job, registration)

    def _start_job(self, job: Job, registration: HandlerRegistration) -> None:
        job.status = JobStatus.ACTIVE
        job.processed_at = datetime.now(timezone.utc)
        job.attempt_count += 1
        self._active_counts[job.type] = self._active_counts.get(job.type, 0) + 1

        task = asyncio.create_task(self._execute(job, registration))
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(thread_name_prefix="deckforge-jobs")
        return self._executor

    async def _invoke(
        self,
        handler: JobHandler,
        job: Job,
        context: JobContext,
        threads: List[Future],
    ) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(job.data, context)
        # A timeout cannot stop the worker thread, so the caller keeps the future
        future = self._get_executor().submit(handler, job.data, context)
        threads.append(future)
        result = await asyncio.wrap_future(future)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _release_slot(self, job_type: str) -> None:
        with self._lock:
            self._active_counts[job_type] -= 1

    def _release_slot_when_done(self, future: Future, job_type: str) -> None:
        loop = asyncio.get_running_loop()

        def on_done(_: Future) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._release_slot, job_type)

        future.add_done_callback(on_done)

    async def _execute(self, job: Job, registration: HandlerRegistration) -> None:
        tags = {"type": job.type}
        job_logger = self._logger.child({"job_id": job.id, "job_type": job.type})
        context = JobContext(job, job_logger)
        timer = self._metrics.start_timer("jobs.duration", tags)
        self._metrics.increment("jobs.started", tags=tags)
        job_logger.debug("Job started", attempt=job.attempt_count)
        threads: List[Future] = []

        try:
            result = await asyncio.wait_for(
                self._invoke(registration.handler, job, context, threads),
                timeout=job.options.timeout,
            )
        except asyncio.TimeoutError:
            self._on_failure(
                job,
                OperationTimeoutError(
                    f"Job timed out after {job.options.timeout}s",
                    timeout_seconds=job.options.timeout,
                ),
                job_logger,
            )
        except Exception as e:
            self._on_failure(job, e, job_logger)
        else:
            self._on_success(job, result, job_logger)
        finally:
            running = [future for future in threads if not future.done()]
            if running:
                # Slot stays taken until the abandoned handler thread returns
                job_logger.warn("Handler thread still running after timeout")
                self._release_slot_when_done(running[0], job.type)
            else:
                self._release_slot(job.type)
            timer.stop({"status": job.status.value})

    def _on_success(self, job: Job, result: Any, job_logger: StructuredLogger) -> None:
        with self._lock:
            job.status = JobStatus.COMPLETED
            job.result = result
            job.error = None
            job.progress = 100.0
            job.completed_at = datetime.now(timezone.utc)
            if job.options.remove_on_complete:
                self._jobs.pop(job.id, None)

        self._metrics.increment("jobs.completed", tags={"type": job.type})
        job_logger.info("Job completed", attempt=job.attempt_count)

    def _on_failure(self, job: Job, error: BaseException, job_logger: StructuredLogger) -> None:
        with self._lock:
            job.error = str(error) or type(error).__name__
            if job.attempt_count < job.options.attempts:
                delay = compute_backoff(
                    job.attempt_count,
                    self.config.backoff_base,
                    self.config.backoff_max,
                )
                job.status = JobStatus.DELAYED
                job.next_attempt_at = self._clock() + delay
                retrying = True
            else:
                job.status = JobStatus.FAILED
                job.completed_at = datetime.now(timezone.utc)
                if job.options.remove_on_fail:
                    self._jobs.pop(job.id, None)
                retrying = False

        if retrying:
            self._metrics.increment("jobs.retried", tags={"type": job.type})
            job_logger.warn(
                "Job attempt failed; retrying",
                error=job.error,
                attempt=job.attempt_count,
                retry_in=delay,
            )
        else:
            self._metrics.increment("jobs.failed", tags={"type": job.type})
            job_logger.error(
                "Job failed permanently",
                error=error,
                attempts=job.attempt_count,
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        self._stopping = False
        if self._handlers:
            self._ensure_loop()
        self._logger.info("Job processor initialized", handlers=len(self._handlers))

    async def shutdown(self) -> None:
        """Stop polling and wait (bounded) for active jobs to drain."""
        self._stopping = True
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None

        if self._active_tasks:
            _, pending = await asyncio.wait(
                set(self._active_tasks),
                timeout=self.config.shutdown_timeout,
            )
            if pending:
                self._logger.warn(
                    "Active jobs still running after shutdown timeout",
                    count=len(pending),
                )
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._logger.info("Job processor shut down")

    async def health_check(self) -> ServiceHealthStatus:
        stats = await self.get_queue_stats()
        status = HealthState.HEALTHY
        message = None
        if self._handlers and not self._stopping and not self.is_running:
            status = HealthState.DEGRADED
            message = "Job processing loop is not running"
        return ServiceHealthStatus(status=status, message=message, metrics=stats.to_dict())
