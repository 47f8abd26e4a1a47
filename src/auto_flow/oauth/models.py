"""Domain models and typed failures for the OAuth credential lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class IntegrationStatus(str, Enum):
    """Per-project integration states; ``error`` may overlay any other state."""

    DISABLED = "disabled"
    CONNECTED = "connected"
    EXPIRED = "expired"
    ERROR = "error"


class OauthError(RuntimeError):
    """Base class for OAuth failures surfaced to callers."""

    code = "OAUTH_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class OauthConfigError(OauthError):
    code = "OAUTH_CONFIG_MISSING"


class OauthStateInvalidError(OauthError):
    """No session for the callback state: unknown, forged or already used."""

    code = "OAUTH_STATE_INVALID"


class OauthStateExpiredError(OauthError):
    code = "OAUTH_STATE_EXPIRED"


class IntegrationNotConnectedError(OauthError):
    code = "OPENCODE_NOT_CONNECTED"


class TokenRefreshFailedError(OauthError):
    code = "TOKEN_REFRESH_FAILED"


class OauthTokenError(OauthError):
    """Token endpoint rejected the request or returned an unusable body."""

    code = "OAUTH_TOKEN_ERROR"


@dataclass(slots=True)
class TokenResult:
    """Normalised token endpoint response."""

    access_token: str
    refresh_token: str | None
    token_type: str | None
    scope: str | None
    expires_in: float | None


@dataclass(slots=True)
class CredentialsWrite:
    """Partial credential update; ``None`` keeps the stored value except for ``revoked_at``."""

    access_token_enc: str | None = None
    refresh_token_enc: str | None = None
    expires_at: datetime | None = None
    scopes: str | None = None
    token_type: str | None = None
    last_refresh_at: datetime | None = None
    revoked_at: datetime | None = None
    encryption_key_version: str | None = None


@dataclass(slots=True)
class CredentialsView:
    integration_id: str
    provider: str
    access_token_enc: str | None
    refresh_token_enc: str | None
    expires_at: datetime | None
    scopes: str | None
    token_type: str | None
    last_refresh_at: datetime | None
    revoked_at: datetime | None
    encryption_key_version: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class OauthSessionCreate:
    project_id: str
    provider: str
    state: str
    code_verifier_enc: str
    code_challenge: str
    redirect_uri: str
    return_url: str
    expires_at: datetime
    user_id: str | None = None


@dataclass(slots=True)
class OauthSessionView:
    project_id: str
    user_id: str | None
    provider: str
    state: str
    code_verifier_enc: str
    code_challenge: str
    redirect_uri: str
    return_url: str
    expires_at: datetime
    created_at: datetime


@dataclass(slots=True)
class IntegrationView:
    integration_id: str
    project_id: str
    type: str
    status: IntegrationStatus
    created_by_user_id: str | None
    connected_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AuthorizationStart:
    """Result of starting an authorization attempt."""

    authorize_url: str
    state: str
    expires_at: datetime


@dataclass(slots=True)
class CallbackResult:
    project_id: str
    return_url: str
