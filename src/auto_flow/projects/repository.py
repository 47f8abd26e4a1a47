"""Project records and the project event log."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from auto_flow.storage.common import (
    to_db_datetime,
    to_optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from auto_flow.storage.database import Database
from auto_flow.storage.sqlmodel_models import Project, ProjectEvent

PROJECT_EVENT_SOURCES = frozenset({"asana", "github", "system", "user", "api"})


@dataclass(slots=True)
class ProjectView:
    """Readable project row."""

    project_id: str
    slug: str
    name: str
    archived_at: datetime | None
    created_at: datetime

    @property
    def is_active(self) -> bool:
        return self.archived_at is None


@dataclass(slots=True)
class ProjectEventView:
    """Project event entry for the audit trail."""

    event_id: int
    project_id: str
    source: str
    event_type: str
    created_at: datetime
    ref: dict[str, Any] = field(default_factory=dict)


class ProjectRepository:
    """Project persistence facade."""

    def __init__(self, database: Database) -> None:
        self.engine = database.engine

    def create_project(self, *, slug: str, name: str) -> ProjectView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Project(project_id=str(uuid4()), slug=slug, name=name, created_at=now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, *, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(self, *, include_archived: bool = False) -> list[ProjectView]:
        """List projects newest first; archived projects are skipped by default."""

        with Session(self.engine) as session:
            statement = select(Project).order_by(col(Project.created_at).desc())
            if not include_archived:
                statement = statement.where(col(Project.archived_at).is_(None))
            rows = session.exec(statement).all()
        return [_to_project_view(row) for row in rows]

    def archive_project(self, *, project_id: str) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(
                    col(Project.project_id) == project_id,
                    col(Project.archived_at).is_(None),
                )
                .values(archived_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def insert_event(
        self,
        *,
        project_id: str,
        source: str,
        event_type: str,
        ref: dict[str, Any] | None = None,
    ) -> None:
        if source not in PROJECT_EVENT_SOURCES:
            raise ValueError(f"Unsupported project event source: {source}")
        with Session(self.engine) as session:
            session.add(
                ProjectEvent(
                    project_id=project_id,
                    source=source,
                    event_type=event_type,
                    ref_json=json.dumps(ref or {}, ensure_ascii=False, sort_keys=True),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_events(self, *, project_id: str, limit: int = 100) -> list[ProjectEventView]:
        bounded = max(1, min(500, limit))
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProjectEvent)
                .where(ProjectEvent.project_id == project_id)
                .order_by(col(ProjectEvent.created_at).desc(), col(ProjectEvent.id).desc())
                .limit(bounded),
            ).all()

        events: list[ProjectEventView] = []
        for row in rows:
            ref: dict[str, Any] = {}
            if row.ref_json:
                parsed = json.loads(row.ref_json)
                if isinstance(parsed, dict):
                    ref = parsed
            events.append(
                ProjectEventView(
                    event_id=row.id or 0,
                    project_id=row.project_id,
                    source=row.source,
                    event_type=row.event_type,
                    created_at=to_utc_aware_datetime(row.created_at),
                    ref=ref,
                ),
            )
        return events


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        slug=row.slug,
        name=row.name,
        archived_at=to_optional_utc(row.archived_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )
