from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from auto_flow.projects.repository import ProjectView
from auto_flow.queue.models import JobCreate, JobStatus, retry_backoff
from auto_flow.queue.repository import JobQueueRepository
from auto_flow.storage.database import Database

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Queue Store"),
]


def test_enqueue_claim_done_lifecycle(queue: JobQueueRepository, project: ProjectView) -> None:
    job = queue.enqueue(
        JobCreate(
            provider="github",
            kind="push",
            payload={"ref": "main"},
            project_id=project.project_id,
        ),
    )
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.locked_by is None

    claimed = queue.claim_next(worker_id="w-a")
    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.locked_by == "w-a"
    assert claimed.locked_at is not None
    assert claimed.payload == {"ref": "main"}

    assert queue.claim_next(worker_id="w-b") is None
    assert queue.mark_done(job.job_id) is True

    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE
    assert stored.locked_by is None
    assert stored.locked_at is None
    assert queue.claim_next(worker_id="w-a") is None


def test_future_jobs_are_not_claimed(queue: JobQueueRepository) -> None:
    queue.enqueue(
        JobCreate(
            provider="internal",
            kind="later",
            run_at=datetime.now(tz=UTC) + timedelta(hours=1),
        ),
    )
    assert queue.claim_next(worker_id="w-a") is None


def test_claim_order_is_next_run_at_then_id(queue: JobQueueRepository) -> None:
    now = datetime.now(tz=UTC)
    late = queue.enqueue(JobCreate(provider="p", kind="k", run_at=now - timedelta(seconds=5)))
    early = queue.enqueue(JobCreate(provider="p", kind="k", run_at=now - timedelta(seconds=30)))
    tie = queue.enqueue(JobCreate(provider="p", kind="k", run_at=now - timedelta(seconds=5)))

    order = []
    while (claimed := queue.claim_next(worker_id="w-a")) is not None:
        order.append(claimed.job_id)
    assert order == [early.job_id, late.job_id, tie.job_id]


@pytest.mark.parametrize(
    ("attempts", "expected_delay"),
    [(1, 10), (2, 60), (3, 300), (4, 300)],
)
def test_mark_failed_reschedules_with_flat_backoff(
    queue: JobQueueRepository,
    attempts: int,
    expected_delay: int,
) -> None:
    job = queue.enqueue(JobCreate(provider="p", kind="k"))
    assert queue.claim_next(worker_id="w-a") is not None

    before = datetime.now(tz=UTC)
    assert queue.mark_failed(job.job_id, attempts=attempts, max_attempts=5, error="boom") is True
    after = datetime.now(tz=UTC)

    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == attempts
    assert stored.last_error == "boom"
    assert stored.locked_by is None
    assert stored.locked_at is None
    delay = timedelta(seconds=expected_delay)
    slack = timedelta(seconds=1)
    assert before + delay - slack <= stored.next_run_at <= after + delay + slack


def test_mark_failed_at_max_attempts_is_terminal(queue: JobQueueRepository) -> None:
    job = queue.enqueue(JobCreate(provider="p", kind="k"))
    assert queue.claim_next(worker_id="w-a") is not None

    assert queue.mark_failed(job.job_id, attempts=5, max_attempts=5, error="final") is True

    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 5
    assert stored.next_run_at == job.next_run_at
    assert queue.claim_next(worker_id="w-a") is None


def test_transitions_only_apply_to_processing_jobs(queue: JobQueueRepository) -> None:
    job = queue.enqueue(JobCreate(provider="p", kind="k"))

    assert queue.mark_done(job.job_id) is False
    assert queue.mark_failed(job.job_id, attempts=1, max_attempts=5, error="x") is False
    stored = queue.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING


def test_retry_backoff_table() -> None:
    assert retry_backoff(0) == timedelta(seconds=10)
    assert retry_backoff(1) == timedelta(seconds=10)
    assert retry_backoff(2) == timedelta(seconds=60)
    assert retry_backoff(3) == timedelta(minutes=5)
    assert retry_backoff(10) == timedelta(minutes=5)


def test_concurrent_claims_on_one_job_have_single_winner(database: Database) -> None:
    job = JobQueueRepository(database).enqueue(JobCreate(provider="p", kind="k"))
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[int | None] = []
    results_lock = threading.Lock()

    def _claim(index: int) -> None:
        repository = JobQueueRepository(database)
        barrier.wait(timeout=5)
        claimed = repository.claim_next(worker_id=f"w-{index}")
        with results_lock:
            results.append(claimed.job_id if claimed is not None else None)

    threads = [threading.Thread(target=_claim, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == workers
    assert [job_id for job_id in results if job_id is not None] == [job.job_id]


def test_concurrent_workers_claim_each_job_exactly_once(database: Database) -> None:
    seed = JobQueueRepository(database)
    expected = {seed.enqueue(JobCreate(provider="p", kind="k")).job_id for _ in range(20)}
    claimed_ids: list[int] = []
    claimed_lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        repository = JobQueueRepository(database)
        while (claimed := repository.claim_next(worker_id=worker_id)) is not None:
            with claimed_lock:
                claimed_ids.append(claimed.job_id)

    threads = [threading.Thread(target=_drain, args=(f"w-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(claimed_ids) == sorted(expected)


def test_list_by_project_is_newest_first_and_scoped(
    queue: JobQueueRepository,
    projects,
    project: ProjectView,
) -> None:
    other = projects.create_project(slug="other", name="Other")
    first = queue.enqueue(JobCreate(provider="p", kind="a", project_id=project.project_id))
    second = queue.enqueue(JobCreate(provider="p", kind="b", project_id=project.project_id))
    queue.enqueue(JobCreate(provider="p", kind="c", project_id=other.project_id))

    listed = queue.list_by_project(project.project_id)
    assert [job.job_id for job in listed] == [second.job_id, first.job_id]
    assert len(queue.list_by_project(project.project_id, limit=1)) == 1
    assert len(queue.list_by_project(project.project_id, limit=0)) == 2


def test_count_by_status_and_oldest_pending(queue: JobQueueRepository) -> None:
    assert queue.oldest_pending_created_at() is None
    first = queue.enqueue(JobCreate(provider="p", kind="k"))
    queue.enqueue(JobCreate(provider="p", kind="k"))
    assert queue.claim_next(worker_id="w-a") is not None

    assert queue.count_by_status() == {"pending": 1, "processing": 1}
    oldest = queue.oldest_pending_created_at()
    assert oldest is not None
    assert oldest >= first.created_at
