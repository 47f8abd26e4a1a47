"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from auto_flow.projects.repository import ProjectRepository, ProjectView
from auto_flow.queue.repository import JobQueueRepository
from auto_flow.storage.database import Database


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database(tmp_path / "auto_flow.db")
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def projects(database: Database) -> ProjectRepository:
    return ProjectRepository(database)


@pytest.fixture()
def project(projects: ProjectRepository) -> ProjectView:
    return projects.create_project(slug="demo", name="Demo project")


@pytest.fixture()
def queue(database: Database) -> JobQueueRepository:
    return JobQueueRepository(database)
