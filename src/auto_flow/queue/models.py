"""Domain models for the durable job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

DEFAULT_MAX_ATTEMPTS = 5


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


def retry_backoff(attempts: int) -> timedelta:
    """Delay before a failed job becomes eligible again.

    Flat three-step table rather than exponential growth: 10s after the first
    failure, 60s after the second, 5 minutes after every later one.
    """

    if attempts <= 1:
        return timedelta(seconds=10)
    if attempts == 2:  # noqa: PLR2004
        return timedelta(seconds=60)
    return timedelta(minutes=5)


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    provider: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    project_id: str | None = None
    run_at: datetime | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(slots=True)
class JobView:
    """Readable job view for worker logic and inspection."""

    job_id: int
    project_id: str | None
    provider: str
    kind: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    next_run_at: datetime
    locked_at: datetime | None
    locked_by: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueueStats:
    """Queue depth snapshot."""

    status_counts: dict[str, int]
    oldest_pending_age_seconds: float | None
