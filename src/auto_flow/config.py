"""Runtime configuration for the job queue, schedulers and OAuth lifecycle."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from auto_flow.queue.models import DEFAULT_MAX_ATTEMPTS


def default_worker_id() -> str:
    return f"w-{os.getpid()}-{secrets.token_hex(4)}"


def env_log_level() -> str:
    """Log level from ``AUTO_FLOW_LOG_LEVEL``, readable without loading other settings."""

    return os.getenv("AUTO_FLOW_LOG_LEVEL", "INFO").strip().upper()


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker loop settings."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    handler_modules: tuple[str, ...] = ()


@dataclass(slots=True)
class SchedulerSettings:
    """Periodic job producer settings. Non-positive intervals disable a scheduler."""

    reconcile_interval_seconds: float = 300.0
    watchdog_interval_minutes: float = 5.0


@dataclass(slots=True)
class OauthProviderSettings:
    """OAuth authorization-code + PKCE provider settings."""

    auth_url: str = ""
    token_url: str = ""
    client_id: str = ""
    client_secret: str | None = None
    scopes: str | None = None
    integration_type: str = "opencode"
    credential_provider: str = "openai"
    callback_path: str = "/oauth/opencode/callback"
    request_timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.auth_url and self.token_url and self.client_id)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".auto_flow.db")
    sqlite_busy_timeout_ms: int = 5_000
    master_key_path: Path = Path("data/master.key")
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    schedulers: SchedulerSettings = field(default_factory=SchedulerSettings)
    oauth: OauthProviderSettings = field(default_factory=OauthProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AUTO_FLOW_DB_PATH", ".auto_flow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AUTO_FLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            master_key_path=Path(os.getenv("AUTO_FLOW_MASTER_KEY_PATH", "data/master.key")),
            log_level=env_log_level(),
            worker=WorkerSettings(
                worker_id=os.getenv("AUTO_FLOW_WORKER_ID", "").strip() or default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("AUTO_FLOW_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                batch_size=int(os.getenv("AUTO_FLOW_WORKER_BATCH_SIZE", "10")),
                default_max_attempts=int(
                    os.getenv("AUTO_FLOW_JOB_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)),
                ),
                handler_modules=_csv_tuple(os.getenv("AUTO_FLOW_HANDLER_MODULES", "")),
            ),
            schedulers=SchedulerSettings(
                reconcile_interval_seconds=float(
                    os.getenv("AUTO_FLOW_RECONCILE_INTERVAL_SECONDS", "300"),
                ),
                watchdog_interval_minutes=float(
                    os.getenv("AUTO_FLOW_WATCHDOG_INTERVAL_MINUTES", "5"),
                ),
            ),
            oauth=OauthProviderSettings(
                auth_url=os.getenv("AUTO_FLOW_OAUTH_AUTH_URL", "").strip(),
                token_url=os.getenv("AUTO_FLOW_OAUTH_TOKEN_URL", "").strip(),
                client_id=os.getenv("AUTO_FLOW_OAUTH_CLIENT_ID", "").strip(),
                client_secret=os.getenv("AUTO_FLOW_OAUTH_CLIENT_SECRET", "").strip() or None,
                scopes=os.getenv("AUTO_FLOW_OAUTH_SCOPES", "").strip() or None,
                integration_type=os.getenv("AUTO_FLOW_OAUTH_INTEGRATION_TYPE", "opencode"),
                credential_provider=os.getenv("AUTO_FLOW_OAUTH_CREDENTIAL_PROVIDER", "openai"),
                callback_path=os.getenv(
                    "AUTO_FLOW_OAUTH_CALLBACK_PATH",
                    "/oauth/opencode/callback",
                ),
                request_timeout_seconds=float(
                    os.getenv("AUTO_FLOW_OAUTH_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are unusable."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("AUTO_FLOW_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.batch_size <= 0:
            raise ValueError("AUTO_FLOW_WORKER_BATCH_SIZE must be a positive integer.")
        if self.worker.default_max_attempts <= 0:
            raise ValueError("AUTO_FLOW_JOB_MAX_ATTEMPTS must be a positive integer.")
        for spec in self.worker.handler_modules:
            if ":" not in spec:
                raise ValueError(
                    f"Invalid AUTO_FLOW_HANDLER_MODULES entry: {spec!r}. "
                    "Expected format '<module>:<callable>'.",
                )

    def validate_for_oauth(self) -> None:
        """Raise configuration error if OAuth provider settings are missing or invalid."""

        if not self.oauth.is_configured:
            raise ValueError(
                "Missing OAuth config "
                "(AUTO_FLOW_OAUTH_AUTH_URL, AUTO_FLOW_OAUTH_TOKEN_URL, AUTO_FLOW_OAUTH_CLIENT_ID).",
            )
        _validate_http_url("AUTO_FLOW_OAUTH_AUTH_URL", self.oauth.auth_url)
        _validate_http_url("AUTO_FLOW_OAUTH_TOKEN_URL", self.oauth.token_url)
        if self.oauth.request_timeout_seconds <= 0:
            raise ValueError("AUTO_FLOW_OAUTH_REQUEST_TIMEOUT_SECONDS must be > 0.")


def _csv_tuple(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
