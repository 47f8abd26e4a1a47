"""Persistent job queue repository."""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from auto_flow.queue.models import (
    JobCreate,
    JobStatus,
    JobView,
    retry_backoff,
)
from auto_flow.storage.common import (
    to_db_datetime,
    to_optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from auto_flow.storage.database import Database
from auto_flow.storage.sqlmodel_models import Job

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


class JobQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a pending job. No deduplication is attempted."""

        now = utc_now()
        with Session(self.engine) as session:
            row = Job(
                project_id=payload.project_id,
                provider=payload.provider,
                kind=payload.kind,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                next_run_at=to_db_datetime(payload.run_at or now),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the oldest ready job.

        The candidate select locks with SKIP LOCKED where the dialect has it;
        the transition itself is a compare-and-swap on ``status`` so a row
        claimed concurrently by another worker is skipped, never waited on.
        """

        skipped: set[int] = set()
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = (
                    select(Job)
                    .where(
                        Job.status == JobStatus.PENDING.value,
                        Job.next_run_at <= to_db_datetime(now),
                    )
                    .order_by(col(Job.next_run_at).asc(), col(Job.id).asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if skipped:
                    statement = statement.where(col(Job.id).not_in(skipped))
                candidate = session.exec(statement).one_or_none()
                if candidate is None or candidate.id is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.id) == candidate.id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        locked_at=to_db_datetime(now),
                        locked_by=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    skipped.add(candidate.id)
                    logger.debug("Job %s claimed concurrently, skipping", candidate.id)
                    continue

                claimed = _to_job_view(
                    session.exec(
                        select(Job)
                        .where(Job.id == candidate.id)
                        .execution_options(populate_existing=True),
                    ).one(),
                )
                session.commit()
                return claimed

    def mark_done(self, job_id: int) -> bool:
        """Mark a processing job as succeeded."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.DONE.value,
                    locked_at=None,
                    locked_by=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_failed(
        self,
        job_id: int,
        *,
        attempts: int,
        max_attempts: int,
        error: str,
    ) -> bool:
        """Record a failed attempt: reschedule with backoff or fail terminally."""

        now = utc_now()
        is_terminal = attempts >= max_attempts
        values: dict[str, object] = {
            "status": (JobStatus.FAILED if is_terminal else JobStatus.PENDING).value,
            "attempts": attempts,
            "last_error": error,
            "locked_at": None,
            "locked_by": None,
            "updated_at": to_db_datetime(now),
        }
        if not is_terminal:
            values["next_run_at"] = to_db_datetime(now + retry_backoff(attempts))

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def list_by_project(self, project_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[JobView]:
        """List recent jobs of one project, newest first."""

        effective_limit = limit if limit > 0 else DEFAULT_LIST_LIMIT
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.project_id == project_id)
                .order_by(col(Job.created_at).desc(), col(Job.id).desc())
                .limit(effective_limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count())
                .group_by(Job.status)
                .order_by(col(Job.status).asc()),
            ).all()
        return {str(status): int(count) for status, count in rows}

    def oldest_pending_created_at(self) -> datetime | None:
        with Session(self.engine) as session:
            value = session.exec(
                select(func.min(Job.created_at)).where(Job.status == JobStatus.PENDING.value),
            ).one()
        return to_optional_utc(value)


def _to_job_view(row: Job) -> JobView:
    payload: dict[str, object] = {}
    if row.payload_json:
        parsed = json.loads(row.payload_json)
        if isinstance(parsed, dict):
            payload = parsed
    return JobView(
        job_id=row.id or 0,
        project_id=row.project_id,
        provider=row.provider,
        kind=row.kind,
        payload=payload,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        locked_at=to_optional_utc(row.locked_at),
        locked_by=row.locked_by,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
