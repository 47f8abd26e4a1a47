"""Periodic producers that enqueue one recurring job per active project."""

from __future__ import annotations

import logging
import threading

from auto_flow.config import SchedulerSettings
from auto_flow.projects.repository import ProjectRepository
from auto_flow.queue.models import DEFAULT_MAX_ATTEMPTS, JobCreate
from auto_flow.queue.repository import JobQueueRepository

logger = logging.getLogger(__name__)

INTERNAL_PROVIDER = "internal"
RECONCILE_KIND = "reconcile.project"
WATCHDOG_KIND = "opencode.watchdog"


class ProjectJobScheduler:
    """Enqueue a fixed (provider, kind) job for every active project on an interval.

    Enqueue is not deduplicated: a pending job of the same kind from an earlier
    tick does not suppress a new one, so handlers must tolerate redundant runs.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        queue: JobQueueRepository,
        projects: ProjectRepository,
        provider: str,
        kind: str,
        interval_seconds: float,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.name = name
        self.queue = queue
        self.projects = projects
        self.provider = provider
        self.kind = kind
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    def run_once(self) -> int:
        """Enqueue one job per active project; failures are logged, never raised."""

        enqueued = 0
        try:
            for project in self.projects.list_projects():
                self.queue.enqueue(
                    JobCreate(
                        provider=self.provider,
                        kind=self.kind,
                        payload={"projectId": project.project_id},
                        project_id=project.project_id,
                        max_attempts=self.max_attempts,
                    ),
                )
                enqueued += 1
        except Exception:
            logger.exception("%s scheduler tick failed", self.name)
        else:
            logger.debug("%s scheduler enqueued %d job(s)", self.name, enqueued)
        return enqueued

    def start(self) -> None:
        """Fire immediately, then every interval on a daemon thread."""

        if not self.enabled:
            logger.info("%s scheduler disabled", self.name)
            return
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"{self.name}-scheduler",
        )
        self._thread.start()
        logger.info(
            "%s scheduler started (interval_seconds=%s)",
            self.name,
            self.interval_seconds,
        )

    def stop(self, *, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("%s scheduler stopped", self.name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(timeout=self.interval_seconds)


def build_default_schedulers(
    *,
    settings: SchedulerSettings,
    queue: JobQueueRepository,
    projects: ProjectRepository,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> list[ProjectJobScheduler]:
    """Reconcile and watchdog producers configured from settings."""

    return [
        ProjectJobScheduler(
            name="reconcile",
            queue=queue,
            projects=projects,
            provider=INTERNAL_PROVIDER,
            kind=RECONCILE_KIND,
            interval_seconds=settings.reconcile_interval_seconds,
            max_attempts=max_attempts,
        ),
        ProjectJobScheduler(
            name="watchdog",
            queue=queue,
            projects=projects,
            provider=INTERNAL_PROVIDER,
            kind=WATCHDOG_KIND,
            interval_seconds=settings.watchdog_interval_minutes * 60,
            max_attempts=max_attempts,
        ),
    ]
