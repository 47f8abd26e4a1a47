"""Controllers for project CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from auto_flow.config import Settings
from auto_flow.projects.repository import ProjectRepository
from auto_flow.storage.database import open_database


@dataclass(slots=True)
class ProjectAddCommand:
    db_path: Path | None
    slug: str
    name: str


@dataclass(slots=True)
class ProjectListCommand:
    db_path: Path | None
    include_archived: bool


@dataclass(slots=True)
class ProjectEventsCommand:
    db_path: Path | None
    project_id: str
    limit: int


class ProjectsCliController:
    """Project registration and inspection."""

    def add(self, command: ProjectAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            project = ProjectRepository(database).create_project(
                slug=command.slug,
                name=command.name,
            )
        return [f"Project created: project_id={project.project_id} slug={project.slug}"]

    def list_projects(self, command: ProjectListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            projects = ProjectRepository(database).list_projects(
                include_archived=command.include_archived,
            )

        lines = [f"Projects: {len(projects)}"]
        for project in projects:
            state = "active" if project.is_active else "archived"
            lines.append(f"  {project.project_id} {project.slug} ({project.name}) {state}")
        return lines

    def events(self, command: ProjectEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            events = ProjectRepository(database).list_events(
                project_id=command.project_id,
                limit=command.limit,
            )

        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.source}/{event.event_type} "
                f"{_short_ref(event.ref)}",
            )
        return lines


def _short_ref(ref: dict[str, object]) -> str:
    parts = []
    for key in ("jobId", "kind", "attempts", "maxAttempts"):
        if key in ref:
            parts.append(f"{key}={ref[key]}")
    return " ".join(parts) or "-"
