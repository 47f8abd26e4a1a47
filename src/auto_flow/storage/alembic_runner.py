"""Programmatic Alembic entry points for the queue and OAuth schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path, *, root_dir: Path = PROJECT_ROOT) -> Config:
    """Alembic config pointing at the repository migrations and the given database."""

    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(config: Config) -> str | None:
    return ScriptDirectory.from_config(config).get_current_head()


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None for an unmigrated file."""

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Bring the database to the latest revision; a no-op when already there."""

    config = build_alembic_config(db_path)
    target = head_revision(config)
    current = current_revision(db_path)
    if current == target:
        logger.debug("Schema at %s is already at revision %s", db_path, target)
        return
    logger.info("Migrating %s from %s to %s", db_path, current or "<empty>", target)
    command.upgrade(config, "head")
