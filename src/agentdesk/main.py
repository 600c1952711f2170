"""CLI entrypoint for agentdesk."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agentdesk import __version__
from agentdesk.controllers import (
    ActionCommand,
    AgentdeskCliController,
    JobCommand,
    ListActionsCommand,
    ListJobsCommand,
    SubmitCommand,
    WorkerCommand,
)
from agentdesk.errors import OrchestratorError
from agentdesk.jobs.models import JobStatus, PendingActionStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentdeskCliController()

_JOB_STATUSES = [status.value for status in JobStatus]
_ACTION_STATUSES = [status.value for status in PendingActionStatus]


@click.group()
@click.version_option(version=__version__, prog_name="agentdesk")
@click.option(
    "--log-level",
    default=None,
    help="Logging level. Defaults to AGENTDESK_LOG_LEVEL or INFO.",
)
def agentdesk(log_level: str | None) -> None:
    """Agent desk job orchestrator CLI."""

    level = (log_level or os.getenv("AGENTDESK_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agentdesk.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", default=None, help="Requesting user. Defaults to AGENTDESK_USER_ID.")
@click.option("--client-id", default=None, help="Optional client scope for knowledge lookup.")
@click.option(
    "--debug/--no-debug",
    default=False,
    show_default=True,
    help="Append intent, capability and knowledge details to the response.",
)
@click.argument("text")
def submit(
    db_path: Path | None,
    user_id: str | None,
    client_id: str | None,
    debug: bool,
    text: str,
) -> None:
    """Submit one request and process it in-process."""

    _emit_lines(
        lambda: CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                text=text,
                user_id=user_id,
                client_id=client_id,
                debug=debug,
            ),
        ),
    )


@agentdesk.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one queued job or keep polling the queue.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit loop mode after this many consecutive empty polls.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the queue worker."""

    _emit_lines(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@agentdesk.group()
def jobs() -> None:
    """Inspect and steer jobs."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_JOB_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        lambda: CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, status=status, limit=limit)),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit_lines(lambda: CONTROLLER.inspect_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Blocked parent job id.")
def jobs_resume(db_path: Path | None, job_id: str) -> None:
    """Resume a blocked job once its sub-jobs are finished."""

    _emit_lines(lambda: CONTROLLER.resume_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Request cancellation of a non-terminal job."""

    _emit_lines(lambda: CONTROLLER.cancel_job(JobCommand(db_path=db_path, job_id=job_id)))


@agentdesk.group()
def actions() -> None:
    """Review pending actions."""


@actions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_ACTION_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--job-id", default=None, help="Only actions prepared by this job.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of actions to print.",
)
def actions_list(
    db_path: Path | None,
    status: str | None,
    job_id: str | None,
    limit: int,
) -> None:
    """List pending actions."""

    _emit_lines(
        lambda: CONTROLLER.list_actions(
            ListActionsCommand(db_path=db_path, status=status, job_id=job_id, limit=limit),
        ),
    )


@actions.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--action-id", required=True, help="Pending action id.")
def actions_approve(db_path: Path | None, action_id: str) -> None:
    """Approve and execute a pending action."""

    _emit_lines(
        lambda: CONTROLLER.approve_action(ActionCommand(db_path=db_path, action_id=action_id)),
    )


@actions.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--action-id", required=True, help="Pending action id.")
def actions_reject(db_path: Path | None, action_id: str) -> None:
    """Reject a pending action."""

    _emit_lines(
        lambda: CONTROLLER.reject_action(ActionCommand(db_path=db_path, action_id=action_id)),
    )


def _emit_lines(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agentdesk()
