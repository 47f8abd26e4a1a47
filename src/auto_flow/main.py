"""CLI entrypoint for auto-flow."""

import logging
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from auto_flow import __version__
from auto_flow.config import env_log_level
from auto_flow.oauth.controllers import (
    OauthCallbackCommand,
    OauthCliController,
    OauthProjectCommand,
    OauthPurgeCommand,
    OauthStartCommand,
)
from auto_flow.oauth.crypto import CryptoFormatError
from auto_flow.oauth.models import OauthError
from auto_flow.projects.controllers import (
    ProjectAddCommand,
    ProjectEventsCommand,
    ProjectListCommand,
    ProjectsCliController,
)
from auto_flow.queue.controllers import (
    QueueCliController,
    QueueEnqueueCommand,
    QueueJobsCommand,
    QueueScheduleCommand,
    QueueStatsCommand,
    QueueWorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
PROJECTS_CONTROLLER = ProjectsCliController()
OAUTH_CONTROLLER = OauthCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _user_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Report configuration and OAuth failures as CLI errors instead of tracebacks."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except OauthError as error:
            raise click.ClickException(f"{error.code}: {error}") from error
        except (CryptoFormatError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="auto-flow")
def auto_flow() -> None:
    """Durable job queue and OAuth credential lifecycle."""

    level = env_log_level()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@auto_flow.group()
def queue() -> None:
    """Job queue commands."""


@queue.command("enqueue")
@DB_PATH_OPTION
@click.option("--provider", required=True, help="Job provider, for example github.")
@click.option("--kind", required=True, help="Job kind within the provider.")
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON object.")
@click.option("--project-id", default=None, help="Owning project id.")
@click.option(
    "--run-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
    default=None,
    help="Earliest run time (UTC). Defaults to now.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts before the job is failed for good.",
)
@_user_errors
def queue_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    provider: str,
    kind: str,
    payload_json: str,
    project_id: str | None,
    run_at: datetime | None,
    max_attempts: int | None,
) -> None:
    """Insert a pending job."""

    _emit_lines(
        QUEUE_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                provider=provider,
                kind=kind,
                payload_json=payload_json,
                project_id=project_id,
                run_at=run_at,
                max_attempts=max_attempts,
            ),
        ),
    )


@queue.command("jobs")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project whose jobs to list.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of jobs.",
)
@_user_errors
def queue_jobs(db_path: Path | None, project_id: str, limit: int) -> None:
    """List a project's jobs, newest first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_jobs(
            QueueJobsCommand(db_path=db_path, project_id=project_id, limit=limit),
        ),
    )


@queue.command("stats")
@DB_PATH_OPTION
@_user_errors
def queue_stats(db_path: Path | None) -> None:
    """Show job counts per status and the oldest pending job age."""

    _emit_lines(QUEUE_CONTROLLER.stats(QueueStatsCommand(db_path=db_path)))


@queue.command("worker")
@DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Run a single tick and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
@click.option(
    "--with-schedulers/--no-schedulers",
    default=False,
    show_default=True,
    help="Also run the reconcile and watchdog producers in this process.",
)
@_user_errors
def queue_worker(
    db_path: Path | None,
    once: bool,
    max_ticks: int | None,
    with_schedulers: bool,
) -> None:
    """Poll and execute ready jobs."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            QueueWorkerCommand(
                db_path=db_path,
                once=once,
                max_ticks=max_ticks,
                with_schedulers=with_schedulers,
            ),
        ),
    )


@queue.command("schedule")
@DB_PATH_OPTION
@click.option(
    "--name",
    "names",
    type=click.Choice(["reconcile", "watchdog"]),
    multiple=True,
    help="Scheduler to fire. Can be repeated; defaults to all.",
)
@_user_errors
def queue_schedule(db_path: Path | None, names: tuple[str, ...]) -> None:
    """Fire the periodic producers once."""

    _emit_lines(
        QUEUE_CONTROLLER.run_schedulers(QueueScheduleCommand(db_path=db_path, names=names)),
    )


@auto_flow.group()
def projects() -> None:
    """Project commands."""


@projects.command("add")
@DB_PATH_OPTION
@click.option("--slug", required=True, help="Unique project slug.")
@click.option("--name", required=True, help="Display name.")
@_user_errors
def projects_add(db_path: Path | None, slug: str, name: str) -> None:
    """Register a project."""

    _emit_lines(PROJECTS_CONTROLLER.add(ProjectAddCommand(db_path=db_path, slug=slug, name=name)))


@projects.command("list")
@DB_PATH_OPTION
@click.option("--all", "include_archived", is_flag=True, help="Include archived projects.")
@_user_errors
def projects_list(db_path: Path | None, include_archived: bool) -> None:
    """List projects, newest first."""

    _emit_lines(
        PROJECTS_CONTROLLER.list_projects(
            ProjectListCommand(db_path=db_path, include_archived=include_archived),
        ),
    )


@projects.command("events")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of events.",
)
@_user_errors
def projects_events(db_path: Path | None, project_id: str, limit: int) -> None:
    """Show the project event log, newest first."""

    _emit_lines(
        PROJECTS_CONTROLLER.events(
            ProjectEventsCommand(db_path=db_path, project_id=project_id, limit=limit),
        ),
    )


@auto_flow.group()
def oauth() -> None:
    """OAuth integration commands."""


@oauth.command("start")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project to connect.")
@click.option("--return-url", required=True, help="Where to send the user after the callback.")
@click.option(
    "--redirect-base-url",
    required=True,
    help="Public base URL of this service; the callback path is appended.",
)
@click.option("--user-id", default=None, help="User starting the flow.")
@_user_errors
def oauth_start(
    db_path: Path | None,
    project_id: str,
    return_url: str,
    redirect_base_url: str,
    user_id: str | None,
) -> None:
    """Begin a PKCE authorization and print the authorize URL."""

    _emit_lines(
        OAUTH_CONTROLLER.start(
            OauthStartCommand(
                db_path=db_path,
                project_id=project_id,
                return_url=return_url,
                redirect_base_url=redirect_base_url,
                user_id=user_id,
            ),
        ),
    )


@oauth.command("callback")
@DB_PATH_OPTION
@click.option("--code", required=True, help="Authorization code from the provider.")
@click.option("--state", required=True, help="State echoed back by the provider.")
@_user_errors
def oauth_callback(db_path: Path | None, code: str, state: str) -> None:
    """Complete an authorization by exchanging the code for tokens."""

    _emit_lines(
        OAUTH_CONTROLLER.callback(OauthCallbackCommand(db_path=db_path, code=code, state=state)),
    )


@oauth.command("token")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project id.")
@click.option("--reveal", is_flag=True, help="Print the access token itself.")
@_user_errors
def oauth_token(db_path: Path | None, project_id: str, reveal: bool) -> None:
    """Fetch a valid access token, refreshing it when needed."""

    _emit_lines(
        OAUTH_CONTROLLER.token(
            OauthProjectCommand(db_path=db_path, project_id=project_id, reveal=reveal),
        ),
    )


@oauth.command("disconnect")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project id.")
@_user_errors
def oauth_disconnect(db_path: Path | None, project_id: str) -> None:
    """Revoke stored tokens and disable the integration."""

    _emit_lines(
        OAUTH_CONTROLLER.disconnect(OauthProjectCommand(db_path=db_path, project_id=project_id)),
    )


@oauth.command("status")
@DB_PATH_OPTION
@click.option("--project-id", required=True, help="Project id.")
@_user_errors
def oauth_status(db_path: Path | None, project_id: str) -> None:
    """Show the integration state for a project."""

    _emit_lines(
        OAUTH_CONTROLLER.status(OauthProjectCommand(db_path=db_path, project_id=project_id)),
    )


@oauth.command("purge-sessions")
@DB_PATH_OPTION
@_user_errors
def oauth_purge_sessions(db_path: Path | None) -> None:
    """Delete expired, never-completed authorization sessions."""

    _emit_lines(OAUTH_CONTROLLER.purge_sessions(OauthPurgeCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_flow()
