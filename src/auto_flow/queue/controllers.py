"""Controllers for queue, worker and scheduler CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from auto_flow.config import Settings
from auto_flow.projects.repository import ProjectRepository
from auto_flow.queue.metrics import build_queue_stats, render_stats_lines
from auto_flow.queue.models import JobCreate, JobView
from auto_flow.queue.repository import JobQueueRepository
from auto_flow.queue.schedulers import build_default_schedulers
from auto_flow.queue.worker import HandlerRegistry, JobWorker, WorkerRunSummary
from auto_flow.storage.database import open_database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for a manual enqueue."""

    db_path: Path | None
    provider: str
    kind: str
    payload_json: str
    project_id: str | None
    run_at: datetime | None
    max_attempts: int | None


@dataclass(slots=True)
class QueueJobsCommand:
    """CLI input for per-project job listing."""

    db_path: Path | None
    project_id: str
    limit: int


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None
    with_schedulers: bool


@dataclass(slots=True)
class QueueScheduleCommand:
    """CLI input for a one-shot scheduler run."""

    db_path: Path | None
    names: tuple[str, ...]


class QueueCliController:
    """Coordinates enqueue, inspection, worker and scheduler CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            if command.project_id is not None and (
                ProjectRepository(database).get_project(project_id=command.project_id) is None
            ):
                raise ValueError(f"Unknown project: {command.project_id}")
            job = JobQueueRepository(database).enqueue(
                JobCreate(
                    provider=command.provider,
                    kind=command.kind,
                    payload=payload,
                    project_id=command.project_id,
                    run_at=command.run_at,
                    max_attempts=command.max_attempts or settings.worker.default_max_attempts,
                ),
            )
        return [
            "Job enqueued: "
            f"job_id={job.job_id} provider={job.provider} kind={job.kind} "
            f"status={job.status.value} next_run_at={job.next_run_at.isoformat()}",
        ]

    def list_jobs(self, command: QueueJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            jobs = JobQueueRepository(database).list_by_project(
                command.project_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            stats = build_queue_stats(JobQueueRepository(database))
        return render_stats_lines(stats)

    def run_worker(self, command: QueueWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        registry = HandlerRegistry()
        registry.load_modules(settings.worker.handler_modules)
        if not registry.keys():
            logger.warning("No job handlers registered; every claimed job will fail")

        with open_database(settings) as database:
            queue = JobQueueRepository(database)
            projects = ProjectRepository(database)
            worker = JobWorker(
                repository=queue,
                registry=registry,
                worker_id=settings.worker.worker_id,
                projects=projects,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                batch_size=settings.worker.batch_size,
            )
            schedulers = (
                build_default_schedulers(
                    settings=settings.schedulers,
                    queue=queue,
                    projects=projects,
                    max_attempts=settings.worker.default_max_attempts,
                )
                if command.with_schedulers
                else []
            )
            for scheduler in schedulers:
                scheduler.start()
            try:
                summary = (
                    worker.tick() if command.once else worker.run_loop(max_ticks=command.max_ticks)
                )
            finally:
                for scheduler in schedulers:
                    scheduler.stop()

        return [_summary_line(worker.worker_id, summary)]

    def run_schedulers(self, command: QueueScheduleCommand) -> list[str]:
        """Fire the selected built-in schedulers once, without starting timers."""

        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            schedulers = build_default_schedulers(
                settings=settings.schedulers,
                queue=JobQueueRepository(database),
                projects=ProjectRepository(database),
                max_attempts=settings.worker.default_max_attempts,
            )
            lines = []
            for scheduler in schedulers:
                if command.names and scheduler.name not in command.names:
                    continue
                if not scheduler.enabled:
                    lines.append(f"Scheduler {scheduler.name}: disabled")
                    continue
                enqueued = scheduler.run_once()
                lines.append(
                    f"Scheduler {scheduler.name}: enqueued={enqueued} "
                    f"provider={scheduler.provider} kind={scheduler.kind}",
                )
        return lines


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError as error:
        raise ValueError(f"Job payload is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValueError("Job payload must be a JSON object.")
    return payload


def _job_line(job: JobView) -> str:
    line = (
        f"  {job.job_id} {job.provider}/{job.kind} status={job.status.value} "
        f"attempts={job.attempts}/{job.max_attempts} "
        f"next_run_at={job.next_run_at.isoformat()}"
    )
    if job.locked_by:
        line += f" locked_by={job.locked_by}"
    if job.last_error:
        line += f" last_error={job.last_error.splitlines()[0]}"
    return line


def _summary_line(worker_id: str, summary: WorkerRunSummary) -> str:
    return (
        f"Worker summary ({worker_id}): "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} terminal={summary.terminal} "
        f"unknown_kind={summary.unknown_kind} idle_polls={summary.idle_polls}"
    )
