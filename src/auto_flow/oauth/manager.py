"""OAuth connect/refresh/disconnect lifecycle for one provider integration."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from urllib.parse import urlencode

from auto_flow.config import OauthProviderSettings
from auto_flow.oauth.client import OauthTokenClient
from auto_flow.oauth.crypto import TokenCipher
from auto_flow.oauth.models import (
    AuthorizationStart,
    CallbackResult,
    CredentialsWrite,
    IntegrationNotConnectedError,
    IntegrationStatus,
    IntegrationView,
    OauthConfigError,
    OauthSessionCreate,
    OauthStateExpiredError,
    OauthStateInvalidError,
    OauthTokenError,
    TokenRefreshFailedError,
    TokenResult,
)
from auto_flow.oauth.pkce import build_code_challenge, build_code_verifier, build_state
from auto_flow.oauth.stores import CredentialStore, IntegrationStore, OauthSessionStore
from auto_flow.storage.common import utc_now
from auto_flow.storage.database import Database

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(minutes=10)
EXPIRY_SKEW = timedelta(seconds=60)
REFRESH_ATTEMPTS = 3
REFRESH_BACKOFF_SECONDS = 0.2


class TokenLifecycleManager:
    """Connects a project to the provider and hands out valid access tokens.

    Integration states move ``disabled -> connected -> expired | disabled``;
    ``error`` is set whenever a callback exchange fails.
    """

    def __init__(
        self,
        *,
        database: Database,
        cipher: TokenCipher,
        settings: OauthProviderSettings,
        client: OauthTokenClient,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cipher = cipher
        self._settings = settings
        self._client = client
        self._sleep = sleep
        self._now = now
        self.integrations = IntegrationStore(database)
        self.credentials = CredentialStore(database)
        self.sessions = OauthSessionStore(database)

    def start_authorization(
        self,
        project_id: str,
        return_url: str,
        redirect_base_url: str,
        user_id: str | None = None,
    ) -> AuthorizationStart:
        """Persist a PKCE session and build the provider authorize URL."""

        if not self._settings.is_configured:
            raise OauthConfigError()

        integration = self.integrations.ensure(
            project_id,
            self._settings.integration_type,
            created_by_user_id=user_id,
        )
        verifier = build_code_verifier()
        challenge = build_code_challenge(verifier)
        state = build_state()
        redirect_uri = redirect_base_url.rstrip("/") + self._settings.callback_path
        expires_at = self._now() + SESSION_TTL

        self.sessions.insert(
            OauthSessionCreate(
                project_id=project_id,
                user_id=user_id,
                provider=self._settings.credential_provider,
                state=state,
                code_verifier_enc=self._cipher.encrypt(verifier),
                code_challenge=challenge,
                redirect_uri=redirect_uri,
                return_url=return_url,
                expires_at=expires_at,
            ),
        )

        params = {
            "response_type": "code",
            "client_id": self._settings.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if self._settings.scopes:
            params["scope"] = self._settings.scopes
        separator = "&" if "?" in self._settings.auth_url else "?"
        authorize_url = f"{self._settings.auth_url}{separator}{urlencode(params)}"

        self.integrations.update_status(integration.integration_id, IntegrationStatus.DISABLED)
        logger.info("Started OAuth authorization for project %s", project_id)
        return AuthorizationStart(authorize_url=authorize_url, state=state, expires_at=expires_at)

    def handle_callback(self, code: str, state: str) -> CallbackResult:
        """Exchange the authorization code for tokens. Each state is usable once."""

        session = self.sessions.get_by_state(state)
        if session is None:
            raise OauthStateInvalidError()

        now = self._now()
        if session.expires_at <= now:
            self.sessions.delete_by_state(state)
            raise OauthStateExpiredError()

        integration: IntegrationView | None = None
        try:
            integration = self.integrations.ensure(
                session.project_id,
                self._settings.integration_type,
                created_by_user_id=session.user_id,
            )
            verifier = self._cipher.decrypt(session.code_verifier_enc)
            tokens = self._client.exchange_code(
                code=code,
                redirect_uri=session.redirect_uri,
                code_verifier=verifier,
            )
            self._store_tokens(integration.integration_id, tokens, now=now)
            self.integrations.update_status(
                integration.integration_id,
                IntegrationStatus.CONNECTED,
                connected_at=now,
            )
        except Exception as exc:
            logger.warning("OAuth callback failed for project %s: %s", session.project_id, exc)
            if integration is not None:
                self.integrations.set_error(integration.integration_id, str(exc))
            raise
        finally:
            self.sessions.delete_by_state(state)

        logger.info(
            "Project %s connected to %s",
            session.project_id,
            self._settings.integration_type,
        )
        return CallbackResult(project_id=session.project_id, return_url=session.return_url)

    def get_access_token(self, project_id: str) -> str:
        """Return a usable access token, refreshing it when close to expiry."""

        integration = self.integrations.get_by_project_type(
            project_id,
            self._settings.integration_type,
        )
        if integration is None or integration.status != IntegrationStatus.CONNECTED:
            raise IntegrationNotConnectedError()
        credentials = self.credentials.get(
            integration.integration_id,
            self._settings.credential_provider,
        )
        if credentials is None or credentials.revoked_at is not None:
            raise IntegrationNotConnectedError()

        now = self._now()
        if credentials.access_token_enc and (
            credentials.expires_at is None or credentials.expires_at > now + EXPIRY_SKEW
        ):
            return self._cipher.decrypt(credentials.access_token_enc)

        if not credentials.refresh_token_enc:
            self._mark_expired(integration, "Missing refresh token")
            raise TokenRefreshFailedError()

        refresh_token = self._cipher.decrypt(credentials.refresh_token_enc)
        last_error: OauthTokenError | None = None
        for attempt in range(REFRESH_ATTEMPTS):
            try:
                tokens = self._client.refresh(refresh_token=refresh_token)
            except OauthTokenError as exc:
                last_error = exc
                logger.warning(
                    "Token refresh attempt %d/%d for project %s failed: %s",
                    attempt + 1,
                    REFRESH_ATTEMPTS,
                    project_id,
                    exc,
                )
                self._sleep(REFRESH_BACKOFF_SECONDS * (attempt + 1))
                continue
            try:
                self._store_tokens(integration.integration_id, tokens, now=self._now())
            except Exception as exc:
                logger.warning(
                    "Storing refreshed tokens for project %s failed: %s",
                    project_id,
                    exc,
                )
                self._mark_expired(integration, str(exc))
                raise TokenRefreshFailedError() from exc
            return tokens.access_token

        self._mark_expired(integration, str(last_error) if last_error else None)
        raise TokenRefreshFailedError() from last_error

    def disconnect(self, project_id: str) -> None:
        """Revoke stored tokens and return the integration to disabled."""

        integration = self.integrations.get_by_project_type(
            project_id,
            self._settings.integration_type,
        )
        if integration is None:
            return
        self.credentials.revoke(integration.integration_id, self._settings.credential_provider)
        self.integrations.update_status(integration.integration_id, IntegrationStatus.DISABLED)
        logger.info("Project %s disconnected from %s", project_id, self._settings.integration_type)

    def integration_status(self, project_id: str) -> IntegrationView | None:
        return self.integrations.get_by_project_type(project_id, self._settings.integration_type)

    def _mark_expired(self, integration: IntegrationView, error: str | None) -> None:
        self.integrations.update_status(
            integration.integration_id,
            IntegrationStatus.EXPIRED,
            last_error=error,
            connected_at=integration.connected_at,
        )

    def _store_tokens(self, integration_id: str, tokens: TokenResult, *, now: datetime) -> None:
        expires_at = (
            now + timedelta(seconds=tokens.expires_in) if tokens.expires_in is not None else None
        )
        self.credentials.upsert(
            integration_id,
            self._settings.credential_provider,
            CredentialsWrite(
                access_token_enc=self._cipher.encrypt(tokens.access_token),
                refresh_token_enc=(
                    self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
                ),
                expires_at=expires_at,
                scopes=tokens.scope,
                token_type=tokens.token_type,
                last_refresh_at=now,
                revoked_at=None,
                encryption_key_version=self._cipher.key_version,
            ),
        )
