"""Persistence for integrations, OAuth credentials and in-flight OAuth sessions."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from auto_flow.oauth.models import (
    CredentialsView,
    CredentialsWrite,
    IntegrationStatus,
    IntegrationView,
    OauthSessionCreate,
    OauthSessionView,
)
from auto_flow.storage.common import (
    to_db_datetime,
    to_optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from auto_flow.storage.database import Database
from auto_flow.storage.sqlmodel_models import Integration, OauthCredentials, OauthSession

_COALESCED_CREDENTIAL_FIELDS = (
    "access_token_enc",
    "refresh_token_enc",
    "expires_at",
    "scopes",
    "token_type",
    "last_refresh_at",
    "encryption_key_version",
)


class CredentialStore:
    """Encrypted OAuth token records keyed by (integration, provider)."""

    def __init__(self, database: Database) -> None:
        self.engine = database.engine

    def get(self, integration_id: str, provider: str) -> CredentialsView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OauthCredentials).where(
                    OauthCredentials.integration_id == integration_id,
                    OauthCredentials.provider == provider,
                ),
            ).one_or_none()
            return _to_credentials_view(row) if row is not None else None

    def upsert(self, integration_id: str, provider: str, fields: CredentialsWrite) -> None:
        """Insert or update credentials, keeping stored values for ``None`` fields.

        ``revoked_at`` is the exception: it always takes the incoming value, so
        an explicit revoke or un-revoke is never swallowed by coalescing.
        """

        now = to_db_datetime(utc_now())
        statement = sqlite_insert(OauthCredentials).values(
            integration_id=integration_id,
            provider=provider,
            access_token_enc=fields.access_token_enc,
            refresh_token_enc=fields.refresh_token_enc,
            expires_at=_optional_db_datetime(fields.expires_at),
            scopes=fields.scopes,
            token_type=fields.token_type,
            last_refresh_at=_optional_db_datetime(fields.last_refresh_at),
            revoked_at=_optional_db_datetime(fields.revoked_at),
            encryption_key_version=fields.encryption_key_version,
            created_at=now,
            updated_at=now,
        )
        updates = {
            name: func.coalesce(
                getattr(statement.excluded, name),
                getattr(OauthCredentials.__table__.c, name),  # type: ignore[attr-defined]
            )
            for name in _COALESCED_CREDENTIAL_FIELDS
        }
        updates["revoked_at"] = statement.excluded.revoked_at
        updates["updated_at"] = statement.excluded.updated_at
        statement = statement.on_conflict_do_update(
            index_elements=["integration_id", "provider"],
            set_=updates,
        )
        with Session(self.engine) as session:
            session.exec(statement)  # type: ignore[call-overload]
            session.commit()

    def revoke(
        self,
        integration_id: str,
        provider: str,
        revoked_at: datetime | None = None,
    ) -> bool:
        """Drop both token ciphertexts and stamp the revocation time."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(OauthCredentials)
                .where(
                    col(OauthCredentials.integration_id) == integration_id,
                    col(OauthCredentials.provider) == provider,
                )
                .values(
                    access_token_enc=None,
                    refresh_token_enc=None,
                    expires_at=None,
                    revoked_at=to_db_datetime(revoked_at or now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return result.rowcount == 1


class OauthSessionStore:
    """Short-lived PKCE authorization state, one row per in-flight attempt."""

    def __init__(self, database: Database) -> None:
        self.engine = database.engine

    def insert(self, payload: OauthSessionCreate) -> None:
        with Session(self.engine) as session:
            session.add(
                OauthSession(
                    project_id=payload.project_id,
                    user_id=payload.user_id,
                    provider=payload.provider,
                    state=payload.state,
                    code_verifier_enc=payload.code_verifier_enc,
                    code_challenge=payload.code_challenge,
                    redirect_uri=payload.redirect_uri,
                    return_url=payload.return_url,
                    expires_at=to_db_datetime(payload.expires_at),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def get_by_state(self, state: str) -> OauthSessionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OauthSession).where(OauthSession.state == state),
            ).one_or_none()
            return _to_session_view(row) if row is not None else None

    def delete_by_state(self, state: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(OauthSession).where(col(OauthSession.state) == state),
            )
            session.commit()
            return result.rowcount == 1

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete abandoned sessions whose TTL has passed."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(OauthSession).where(col(OauthSession.expires_at) < cutoff),
            )
            session.commit()
            return int(result.rowcount or 0)


class IntegrationStore:
    """Per-project, per-type integration status records."""

    def __init__(self, database: Database) -> None:
        self.engine = database.engine

    def get_by_project_type(self, project_id: str, integration_type: str) -> IntegrationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Integration).where(
                    Integration.project_id == project_id,
                    Integration.type == integration_type,
                ),
            ).one_or_none()
            return _to_integration_view(row) if row is not None else None

    def ensure(
        self,
        project_id: str,
        integration_type: str,
        *,
        created_by_user_id: str | None = None,
    ) -> IntegrationView:
        """Return the integration row, creating it as disabled when missing."""

        now = to_db_datetime(utc_now())
        statement = sqlite_insert(Integration).values(
            integration_id=str(uuid4()),
            project_id=project_id,
            type=integration_type,
            status=IntegrationStatus.DISABLED.value,
            created_by_user_id=created_by_user_id,
            created_at=now,
            updated_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["project_id", "type"],
            set_={"updated_at": statement.excluded.updated_at},
        )
        with Session(self.engine) as session:
            session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            row = session.exec(
                select(Integration).where(
                    Integration.project_id == project_id,
                    Integration.type == integration_type,
                ),
            ).one()
            return _to_integration_view(row)

    def update_status(
        self,
        integration_id: str,
        status: IntegrationStatus,
        *,
        last_error: str | None = None,
        connected_at: datetime | None = None,
    ) -> None:
        """Set status, last_error and connected_at together (``None`` clears)."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(Integration)
                .where(col(Integration.integration_id) == integration_id)
                .values(
                    status=status.value,
                    last_error=last_error,
                    connected_at=_optional_db_datetime(connected_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def set_error(self, integration_id: str, error: str) -> None:
        """Flag an error without touching connected_at."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(Integration)
                .where(col(Integration.integration_id) == integration_id)
                .values(
                    status=IntegrationStatus.ERROR.value,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _to_credentials_view(row: OauthCredentials) -> CredentialsView:
    return CredentialsView(
        integration_id=row.integration_id,
        provider=row.provider,
        access_token_enc=row.access_token_enc,
        refresh_token_enc=row.refresh_token_enc,
        expires_at=to_optional_utc(row.expires_at),
        scopes=row.scopes,
        token_type=row.token_type,
        last_refresh_at=to_optional_utc(row.last_refresh_at),
        revoked_at=to_optional_utc(row.revoked_at),
        encryption_key_version=row.encryption_key_version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_view(row: OauthSession) -> OauthSessionView:
    return OauthSessionView(
        project_id=row.project_id,
        user_id=row.user_id,
        provider=row.provider,
        state=row.state,
        code_verifier_enc=row.code_verifier_enc,
        code_challenge=row.code_challenge,
        redirect_uri=row.redirect_uri,
        return_url=row.return_url,
        expires_at=to_utc_aware_datetime(row.expires_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_integration_view(row: Integration) -> IntegrationView:
    return IntegrationView(
        integration_id=row.integration_id,
        project_id=row.project_id,
        type=row.type,
        status=IntegrationStatus(row.status),
        created_by_user_id=row.created_by_user_id,
        connected_at=to_optional_utc(row.connected_at),
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
