"""
Deckforge - Background Jobs

In-process job scheduling with priorities, retries and bounded concurrency.
"""

from jobs.models import (
    Job,
    JobContext,
    JobOptions,
    JobSnapshot,
    JobStatus,
    QueueStats,
    compute_backoff,
)
from jobs.processor import BackgroundJobProcessor

__all__ = [
    "BackgroundJobProcessor",
    "Job",
    "JobContext",
    "JobOptions",
    "JobSnapshot",
    "JobStatus",
    "QueueStats",
    "compute_backoff",
]
