"""
Deckforge - Job Models

Job records, options, queue statistics and the context handed to job
handlers.

State machine:
    waiting -> active -> completed | delayed | failed
    delayed -> waiting          (when next_attempt_at elapses)
    waiting | delayed -> failed (cancellation)
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.errors import ValidationError
from observability.logging import StructuredLogger


class JobStatus(Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
CANCELLABLE_STATUSES = frozenset({JobStatus.WAITING, JobStatus.DELAYED})


def compute_backoff(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Exponential backoff in seconds after the ``attempt``-th failure."""
    return min(base * (2 ** (attempt - 1)), cap)


@dataclass
class JobOptions:
    """
    Per-job scheduling options.

    ``attempts`` and ``timeout`` left as None take the processor defaults.
    Durations are seconds.
    """

    delay: float = 0.0
    attempts: Optional[int] = None
    priority: int = 0
    timeout: Optional[float] = None
    remove_on_complete: bool = True
    remove_on_fail: bool = False

    def validate(self) -> None:
        if self.delay < 0:
            raise ValidationError("Job delay cannot be negative", field="delay")
        if self.attempts is not None and self.attempts < 1:
            raise ValidationError("Job attempts must be at least 1", field="attempts")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError("Job timeout must be positive", field="timeout")


@dataclass
class Job:
    """A scheduled unit of work, owned by the job processor."""

    id: str
    type: str
    data: Any
    options: JobOptions
    status: JobStatus = JobStatus.WAITING
    progress: float = 0.0
    result: Any = None
    error: Optional[str] = None
    attempt_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_attempt_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "JobSnapshot":
        """Detached read-only copy; mutable payloads are deep-copied."""
        return JobSnapshot(
            id=self.id,
            type=self.type,
            data=copy.deepcopy(self.data),
            options=replace(self.options),
            status=self.status,
            progress=self.progress,
            result=copy.deepcopy(self.result),
            error=self.error,
            attempt_count=self.attempt_count,
            created_at=self.created_at,
            processed_at=self.processed_at,
            completed_at=self.completed_at,
            next_attempt_at=self.next_attempt_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.snapshot().to_dict()


@dataclass(frozen=True)
class JobSnapshot:
    """Public status view of a job, detached from the live record."""

    id: str
    type: str
    data: Any
    options: JobOptions
    status: JobStatus
    progress: float
    result: Any
    error: Optional[str]
    attempt_count: int
    created_at: datetime
    processed_at: Optional[datetime]
    completed_at: Optional[datetime]
    next_attempt_at: Optional[float]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "attempt_count": self.attempt_count,
            "attempts": self.options.attempts,
            "priority": self.options.priority,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class QueueStats:
    """Job counts per status."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }


class JobContext:
    """Handed to a job handler: progress reporting and job-scoped logging."""

    def __init__(self, job: Job, logger: StructuredLogger):
        self._job = job
        self.logger = logger

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def job_type(self) -> str:
        return self._job.type

    @property
    def attempt(self) -> int:
        return self._job.attempt_count

    @property
    def progress(self) -> float:
        return self._job.progress

    async def update_progress(self, progress: float) -> None:
        self._job.progress = max(0.0, min(100.0, float(progress)))
        self.logger.debug("Job progress updated", progress=self._job.progress)

    def log(self, message: str, level: str = "info", **meta: Any) -> None:
        self.logger.log(level, message, **meta)


JobHandler = Callable[[Any, JobContext], Union[Awaitable[Any], Any]]
