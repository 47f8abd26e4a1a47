"""Queue depth metrics for stats commands."""

from __future__ import annotations

from datetime import datetime

from auto_flow.queue.models import JobStatus, QueueStats
from auto_flow.queue.repository import JobQueueRepository
from auto_flow.storage.common import utc_now


def build_queue_stats(
    repository: JobQueueRepository,
    *,
    now: datetime | None = None,
) -> QueueStats:
    """Count jobs per status and measure the age of the oldest pending job."""

    counts = {status.value: 0 for status in JobStatus}
    counts.update(repository.count_by_status())
    oldest = repository.oldest_pending_created_at()
    age = None
    if oldest is not None:
        age = max(0.0, ((now or utc_now()) - oldest).total_seconds())
    return QueueStats(status_counts=counts, oldest_pending_age_seconds=age)


def render_stats_lines(stats: QueueStats) -> list[str]:
    lines = ["Job queue depth:"]
    lines.extend(f"  {status}={count}" for status, count in stats.status_counts.items())
    if stats.oldest_pending_age_seconds is None:
        lines.append("Oldest pending job: none")
    else:
        lines.append(f"Oldest pending job age: {stats.oldest_pending_age_seconds:.1f}s")
    return lines
