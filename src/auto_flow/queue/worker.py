"""Queue worker that dispatches claimed jobs to registered handlers."""

from __future__ import annotations

import importlib
import logging
import signal
import threading
import time
import traceback
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from auto_flow.projects.repository import ProjectRepository
from auto_flow.queue.models import JobView
from auto_flow.queue.repository import JobQueueRepository

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any], str | None], object]


class HandlerRegistry:
    """Exact (provider, kind) -> handler lookup."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], JobHandler] = {}

    def register(self, provider: str, kind: str, handler: JobHandler) -> None:
        key = (provider, kind)
        if key in self._handlers:
            raise ValueError(f"Handler already registered: provider={provider} kind={kind}")
        self._handlers[key] = handler

    def resolve(self, provider: str, kind: str) -> JobHandler | None:
        return self._handlers.get((provider, kind))

    def keys(self) -> list[tuple[str, str]]:
        return sorted(self._handlers)

    def load_modules(self, specs: tuple[str, ...]) -> None:
        """Import ``module:callable`` entries and let each register its handlers."""

        for spec in specs:
            module_name, _, attr = spec.partition(":")
            if not module_name or not attr:
                raise ValueError(f"Invalid handler module spec: {spec!r}")
            register = getattr(importlib.import_module(module_name), attr)
            register(self)
            logger.info("Loaded job handlers from %s", spec)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    terminal: int = 0
    unknown_kind: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.terminal += other.terminal
        self.unknown_kind += other.unknown_kind
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims ready jobs in small batches and runs them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobQueueRepository,
        registry: HandlerRegistry,
        worker_id: str,
        projects: ProjectRepository | None = None,
        poll_interval_seconds: float = 1.0,
        batch_size: int = 10,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.projects = projects
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._tick_lock = threading.Lock()
        self._stop_requested = False

    def tick(self) -> WorkerRunSummary:
        """Drain up to ``batch_size`` ready jobs; overlapping calls return immediately."""

        summary = WorkerRunSummary()
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Worker %s tick skipped: previous tick still running", self.worker_id)
            summary.idle_polls = 1
            return summary
        try:
            for _ in range(self.batch_size):
                if self._stop_requested:
                    break
                job = self.repository.claim_next(worker_id=self.worker_id)
                if job is None:
                    break
                self._process(job, summary)
        except Exception:
            logger.exception("Job worker tick failed (worker_id=%s)", self.worker_id)
        finally:
            self._tick_lock.release()

        if summary.processed == 0:
            summary.idle_polls = 1
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> WorkerRunSummary:
        """Tick on a fixed interval until stopped or ``max_ticks`` is reached.

        A full batch does not trigger an early extra tick: throughput per
        process is bounded by ``batch_size / poll_interval_seconds``.
        """

        aggregate = WorkerRunSummary()
        ticks = 0
        logger.info("Job worker started (worker_id=%s)", self.worker_id)
        with self._signal_handlers():
            while not self._stop_requested:
                started = time.monotonic()
                aggregate.add(self.tick())
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                remaining = self.poll_interval_seconds - (time.monotonic() - started)
                self._sleep_with_stop(remaining)
        logger.info(
            "Job worker stopped (worker_id=%s processed=%d)",
            self.worker_id,
            aggregate.processed,
        )
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _process(self, job: JobView, summary: WorkerRunSummary) -> None:
        summary.processed += 1
        handler = self.registry.resolve(job.provider, job.kind)
        if handler is None:
            summary.unknown_kind += 1
            self._fail(
                job,
                f"Unknown job kind: provider={job.provider} kind={job.kind}",
                summary,
            )
            return

        try:
            handler(job.payload, job.project_id)
        except Exception as error:  # noqa: BLE001
            error_text = "".join(
                traceback.format_exception(type(error), error, error.__traceback__),
            ).strip()
            logger.error(
                "Job failed (job_id=%s provider=%s kind=%s): %s",
                job.job_id,
                job.provider,
                job.kind,
                error,
            )
            self._fail(job, error_text, summary)
            return

        if self.repository.mark_done(job.job_id):
            summary.succeeded += 1
        else:
            logger.warning("Job %s left processing state before completion", job.job_id)

    def _fail(self, job: JobView, error: str, summary: WorkerRunSummary) -> None:
        attempts = job.attempts + 1
        terminal = attempts >= job.max_attempts
        updated = self.repository.mark_failed(
            job.job_id,
            attempts=attempts,
            max_attempts=job.max_attempts,
            error=error,
        )
        summary.failed += 1
        if updated:
            if terminal:
                summary.terminal += 1
            else:
                summary.retried += 1
        self._record_project_error(job, attempts=attempts, error=error)

    def _record_project_error(self, job: JobView, *, attempts: int, error: str) -> None:
        if self.projects is None or job.project_id is None:
            return
        try:
            self.projects.insert_event(
                project_id=job.project_id,
                source="system",
                event_type="error",
                ref={
                    "jobId": job.job_id,
                    "provider": job.provider,
                    "kind": job.kind,
                    "attempts": attempts,
                    "maxAttempts": job.max_attempts,
                    "error": error,
                },
            )
        except Exception:
            logger.exception("Failed to record project error event for job %s", job.job_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info(
                "Worker %s received %s, stopping",
                self.worker_id,
                signal.Signals(signum).name,
            )
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
