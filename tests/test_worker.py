from __future__ import annotations

import logging
import os
import signal
import sys
import types
from typing import Any

import allure
import pytest

from auto_flow.projects.repository import ProjectRepository, ProjectView
from auto_flow.queue.models import JobCreate, JobStatus
from auto_flow.queue.repository import JobQueueRepository
from auto_flow.queue.worker import HandlerRegistry, JobWorker, WorkerRunSummary

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Loop"),
]


def _worker(
    queue: JobQueueRepository,
    registry: HandlerRegistry,
    projects: ProjectRepository | None = None,
    **kwargs: Any,
) -> JobWorker:
    return JobWorker(
        repository=queue,
        registry=registry,
        worker_id="w-test",
        projects=projects,
        poll_interval_seconds=0.01,
        **kwargs,
    )


def test_successful_handler_marks_job_done(queue: JobQueueRepository) -> None:
    calls: list[tuple[dict[str, Any], str | None]] = []
    registry = HandlerRegistry()
    registry.register(
        "github",
        "push",
        lambda payload, project_id: calls.append((payload, project_id)),
    )
    job = queue.enqueue(JobCreate(provider="github", kind="push", payload={"sha": "abc"}))

    summary = _worker(queue, registry).tick()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert calls == [({"sha": "abc"}, None)]
    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE


def test_unknown_kind_fails_job_with_descriptive_error(queue: JobQueueRepository) -> None:
    job = queue.enqueue(JobCreate(provider="asana", kind="mystery"))

    summary = _worker(queue, HandlerRegistry()).tick()

    assert summary.unknown_kind == 1
    assert summary.retried == 1
    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.last_error == "Unknown job kind: provider=asana kind=mystery"


def test_handler_exception_is_recorded_and_batch_continues(
    queue: JobQueueRepository,
    projects: ProjectRepository,
    project: ProjectView,
) -> None:
    def _explode(payload: dict[str, Any], project_id: str | None) -> None:
        raise RuntimeError("handler exploded")

    handled: list[str | None] = []
    registry = HandlerRegistry()
    registry.register("github", "bad", _explode)
    registry.register("github", "good", lambda payload, project_id: handled.append(project_id))
    bad = queue.enqueue(
        JobCreate(provider="github", kind="bad", project_id=project.project_id, max_attempts=3),
    )
    good = queue.enqueue(JobCreate(provider="github", kind="good", project_id=project.project_id))

    summary = _worker(queue, registry, projects).tick()

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.succeeded == 1
    assert handled == [project.project_id]

    failed = queue.get(bad.job_id)
    assert failed is not None
    assert failed.status == JobStatus.PENDING
    assert failed.attempts == 1
    assert failed.last_error is not None
    assert "RuntimeError: handler exploded" in failed.last_error
    assert "Traceback" in failed.last_error
    done = queue.get(good.job_id)
    assert done is not None
    assert done.status == JobStatus.DONE

    events = projects.list_events(project_id=project.project_id)
    assert len(events) == 1
    assert events[0].source == "system"
    assert events[0].event_type == "error"
    assert events[0].ref["jobId"] == bad.job_id
    assert events[0].ref["provider"] == "github"
    assert events[0].ref["kind"] == "bad"
    assert events[0].ref["attempts"] == 1
    assert events[0].ref["maxAttempts"] == 3


def test_last_attempt_failure_is_terminal(queue: JobQueueRepository) -> None:
    job = queue.enqueue(JobCreate(provider="p", kind="unknown", max_attempts=1))

    summary = _worker(queue, HandlerRegistry()).tick()

    assert summary.terminal == 1
    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED


def test_tick_processes_at_most_batch_size_jobs(queue: JobQueueRepository) -> None:
    registry = HandlerRegistry()
    registry.register("p", "k", lambda payload, project_id: None)
    for _ in range(5):
        queue.enqueue(JobCreate(provider="p", kind="k"))

    worker = _worker(queue, registry, batch_size=3)
    first = worker.tick()
    second = worker.tick()
    third = worker.tick()

    assert first.processed == 3
    assert second.processed == 2
    assert third.processed == 0
    assert third.idle_polls == 1


def test_overlapping_tick_returns_immediately(queue: JobQueueRepository) -> None:
    nested: list[WorkerRunSummary] = []
    registry = HandlerRegistry()
    worker = _worker(queue, registry)
    registry.register("p", "k", lambda payload, project_id: nested.append(worker.tick()))
    queue.enqueue(JobCreate(provider="p", kind="k"))
    queue.enqueue(JobCreate(provider="p", kind="k"))

    summary = worker.tick()

    assert summary.processed == 2
    assert len(nested) == 2
    assert all(inner.processed == 0 and inner.idle_polls == 1 for inner in nested)


def test_run_loop_stops_after_max_ticks(queue: JobQueueRepository) -> None:
    registry = HandlerRegistry()
    registry.register("p", "k", lambda payload, project_id: None)
    queue.enqueue(JobCreate(provider="p", kind="k"))

    summary = _worker(queue, registry).run_loop(max_ticks=2)

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert summary.idle_polls == 1


def test_storage_error_ends_tick_and_loop_continues(
    queue: JobQueueRepository,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    registry = HandlerRegistry()
    registry.register("p", "k", lambda payload, project_id: None)
    job = queue.enqueue(JobCreate(provider="p", kind="k"))
    claim_next = queue.claim_next
    calls: list[str] = []

    def _flaky_claim(*, worker_id: str) -> object:
        calls.append(worker_id)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return claim_next(worker_id=worker_id)

    monkeypatch.setattr(queue, "claim_next", _flaky_claim)
    worker = _worker(queue, registry)

    with caplog.at_level(logging.ERROR, logger="auto_flow.queue.worker"):
        failed_tick = worker.tick()
    assert failed_tick.processed == 0
    assert failed_tick.idle_polls == 1
    assert "Job worker tick failed" in caplog.text

    summary = worker.run_loop(max_ticks=2)

    assert summary.processed == 1
    assert summary.succeeded == 1
    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_sigterm_stops_loop_after_current_job(queue: JobQueueRepository) -> None:
    handled: list[str | None] = []

    def _handler(payload: dict[str, Any], project_id: str | None) -> None:
        handled.append(project_id)
        os.kill(os.getpid(), signal.SIGTERM)

    registry = HandlerRegistry()
    registry.register("p", "k", _handler)
    jobs = [queue.enqueue(JobCreate(provider="p", kind="k")) for _ in range(3)]
    original = signal.getsignal(signal.SIGTERM)

    summary = _worker(queue, registry).run_loop()

    assert summary.processed == 1
    assert len(handled) == 1
    assert signal.getsignal(signal.SIGTERM) is original
    statuses = [queue.get(job.job_id).status for job in jobs]  # type: ignore[union-attr]
    assert statuses == [JobStatus.DONE, JobStatus.PENDING, JobStatus.PENDING]


def test_registry_rejects_duplicate_handlers() -> None:
    registry = HandlerRegistry()
    registry.register("p", "k", lambda payload, project_id: None)
    with pytest.raises(ValueError, match="already registered"):
        registry.register("p", "k", lambda payload, project_id: None)
    assert registry.resolve("p", "other") is None
    assert registry.keys() == [("p", "k")]


def test_registry_loads_handler_modules(monkeypatch: pytest.MonkeyPatch) -> None:
    module = types.ModuleType("auto_flow_test_handlers")

    def register(registry: HandlerRegistry) -> None:
        registry.register("internal", "reconcile.project", lambda payload, project_id: None)

    module.register = register  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "auto_flow_test_handlers", module)

    registry = HandlerRegistry()
    registry.load_modules(("auto_flow_test_handlers:register",))
    assert registry.keys() == [("internal", "reconcile.project")]
