"""SQLModel ORM tables for queue, project and OAuth storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    slug: str = Field(unique=True, index=True)
    name: str
    archived_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectEvent(SQLModel, table=True):
    __tablename__ = "project_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source: str
    event_type: str = Field(index=True)
    ref_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_next_run", "status", "next_run_at", "id"),
        Index("idx_jobs_project_created", "project_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    provider: str
    kind: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    locked_by: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Integration(SQLModel, table=True):
    __tablename__ = "integrations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "type", name="uq_integrations_project_type"),
    )

    integration_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str
    status: str = Field(index=True)
    created_by_user_id: str | None = None
    connected_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OauthCredentials(SQLModel, table=True):
    __tablename__ = "oauth_credentials"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "provider",
            name="uq_oauth_credentials_integration_provider",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    integration_id: str = Field(
        sa_column=Column(
            ForeignKey("integrations.integration_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    provider: str
    access_token_enc: str | None = Field(default=None, sa_column=Column(Text))
    refresh_token_enc: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    scopes: str | None = None
    token_type: str | None = None
    last_refresh_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    revoked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    encryption_key_version: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OauthSession(SQLModel, table=True):
    __tablename__ = "oauth_sessions"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    user_id: str | None = None
    provider: str
    state: str = Field(unique=True, index=True)
    code_verifier_enc: str = Field(sa_column=Column(Text, nullable=False))
    code_challenge: str
    redirect_uri: str
    return_url: str
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
