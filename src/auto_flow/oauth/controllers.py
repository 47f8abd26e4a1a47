"""Controllers for OAuth CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from auto_flow.config import Settings
from auto_flow.oauth.client import OauthTokenClient
from auto_flow.oauth.crypto import MasterKey, TokenCipher
from auto_flow.oauth.manager import TokenLifecycleManager
from auto_flow.oauth.stores import OauthSessionStore
from auto_flow.storage.database import open_database


@dataclass(slots=True)
class OauthStartCommand:
    """CLI input for starting an authorization attempt."""

    db_path: Path | None
    project_id: str
    return_url: str
    redirect_base_url: str
    user_id: str | None


@dataclass(slots=True)
class OauthCallbackCommand:
    db_path: Path | None
    code: str
    state: str


@dataclass(slots=True)
class OauthProjectCommand:
    """CLI input for commands addressing one project's integration."""

    db_path: Path | None
    project_id: str
    reveal: bool = False


@dataclass(slots=True)
class OauthPurgeCommand:
    db_path: Path | None


class OauthCliController:
    """Coordinates the OAuth connect, token and disconnect operations."""

    def start(self, command: OauthStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            started = manager.start_authorization(
                command.project_id,
                command.return_url,
                command.redirect_base_url,
                user_id=command.user_id,
            )
        return [
            f"Authorize URL: {started.authorize_url}",
            f"State: {started.state}",
            f"Expires at: {started.expires_at.isoformat()}",
        ]

    def callback(self, command: OauthCallbackCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            result = manager.handle_callback(command.code, command.state)
        return [
            f"Connected: project_id={result.project_id}",
            f"Return URL: {result.return_url}",
        ]

    def token(self, command: OauthProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            access_token = manager.get_access_token(command.project_id)
        if command.reveal:
            return [access_token]
        return [f"Access token available ({len(access_token)} chars)."]

    def disconnect(self, command: OauthProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            manager.disconnect(command.project_id)
        return [f"Disconnected: project_id={command.project_id}"]

    def status(self, command: OauthProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            integration = manager.integration_status(command.project_id)
        if integration is None:
            return [f"Integration {settings.oauth.integration_type}: not configured"]
        connected = integration.connected_at.isoformat() if integration.connected_at else "-"
        return [
            f"Integration {integration.type}: status={integration.status.value}",
            f"Connected at: {connected}",
            f"Last error: {integration.last_error or '-'}",
        ]

    def purge_sessions(self, command: OauthPurgeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_database(settings) as database:
            removed = OauthSessionStore(database).purge_expired()
        return [f"Expired OAuth sessions removed: {removed}"]


@contextmanager
def _manager(settings: Settings) -> Iterator[TokenLifecycleManager]:
    settings.validate_for_oauth()
    cipher = TokenCipher(MasterKey.load_or_create(settings.master_key_path))
    with open_database(settings) as database, OauthTokenClient(settings.oauth) as client:
        yield TokenLifecycleManager(
            database=database,
            cipher=cipher,
            settings=settings.oauth,
            client=client,
        )
