"""Clock, engine and datetime helpers shared by the stores."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for the queue database.

    Every connection gets WAL journaling, a busy timeout and enforced foreign
    keys. Connections are not pooled so worker and scheduler threads never
    share one.
    """

    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_connection_policy(dbapi_connection, busy_timeout_ms)

    return engine


def to_db_datetime(value: datetime) -> datetime:
    """Normalise to naive UTC, the form stored in SQLite columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _apply_connection_policy(dbapi_connection: sqlite3.Connection, busy_timeout_ms: int) -> None:
    for statement in (
        "PRAGMA journal_mode = WAL",
        f"PRAGMA busy_timeout = {busy_timeout_ms}",
        "PRAGMA foreign_keys = ON",
    ):
        dbapi_connection.execute(statement)
