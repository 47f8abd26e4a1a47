"""Shared database handle used by every store."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from auto_flow.config import Settings
from auto_flow.storage.alembic_runner import upgrade_head
from auto_flow.storage.common import build_sqlite_engine


class Database:
    """SQLite engine with the project-wide connection policy."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


@contextmanager
def open_database(settings: Settings) -> Iterator[Database]:
    """Open the configured database with the schema migrated to head."""

    database = Database(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
