"""Controllers for agentdesk CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agentdesk.config import Settings
from agentdesk.jobs.models import JobStatus, JobView, PendingActionStatus, PendingActionView
from agentdesk.jobs.repository import JobRepository
from agentdesk.response import format_for_cli
from agentdesk.services import build_action_service, build_orchestrator
from agentdesk.worker import JobWorker, default_worker_id


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for one in-process request."""

    db_path: Path | None
    text: str
    user_id: str | None
    client_id: str | None
    debug: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for inspect/resume/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ListActionsCommand:
    db_path: Path | None
    status: str | None
    job_id: str | None
    limit: int


@dataclass(slots=True)
class ActionCommand:
    """CLI input for approve/reject operations."""

    db_path: Path | None
    action_id: str


class AgentdeskCliController:
    """Coordinates submit, worker, job and action CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _repository(settings) as repository:
            orchestrator = build_orchestrator(settings=settings, repository=repository)
            outcome = asyncio.run(
                orchestrator.submit_request(
                    command.text,
                    user_id=user_id,
                    client_id=command.client_id,
                ),
            )
            job = repository.require_job(outcome.job_id)

        if job.status == JobStatus.DONE and job.result is not None:
            response = format_for_cli(job.result, job, debug=command.debug)
        else:
            response = outcome.response
        lines = [
            response,
            "",
            f"Job {outcome.job_id}: status={outcome.status.value} retries={outcome.retry_count}",
        ]
        if outcome.child_job_id is not None:
            lines.append(f"Waiting for sub-job: {outcome.child_job_id}")
        if outcome.pending_action_id is not None:
            lines.append(f"Pending action awaiting approval: {outcome.pending_action_id}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        worker_id = default_worker_id()
        with _repository(settings) as repository:
            worker = JobWorker(
                repository=repository,
                orchestrator=build_orchestrator(
                    settings=settings,
                    repository=repository,
                    worker_id=worker_id,
                ),
                worker_id=worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                error_backoff_seconds=settings.worker.error_backoff_seconds,
            )
            summary = asyncio.run(
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                ),
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} needs_review={summary.needs_review} "
            f"blocked={summary.blocked} errors={summary.errors} idle_polls={summary.idle_polls}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_job_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(f"  {_job_line(job)}" for job in jobs)
        return lines

    def inspect_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
            actions = repository.list_pending_actions(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        intent = job.intent
        pack = job.knowledge_pack
        validation = job.validation
        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Input: {job.raw_input}",
            (
                f"Intent: {intent.primary} confidence={intent.confidence:.2f}"
                if intent is not None
                else "Intent: -"
            ),
            f"Capability: {job.assigned_capability or job.requested_capability or '-'}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            (
                f"Knowledge: ready={pack.ready} chunks={len(pack.chunks)} "
                f"missing={','.join(pack.missing) or '-'}"
                if pack is not None
                else "Knowledge: -"
            ),
            (
                f"Validation: passed={validation.passed} score={validation.overall_score:.2f}"
                if validation is not None
                else "Validation: -"
            ),
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Cancel requested: {_format_optional(job.cancel_requested_at)}",
            f"Memory entries: {len(job.memory)}",
            f"Children: {len(details.children)}",
        ]
        lines.extend(f"  child {_job_line(child)}" for child in details.children)
        lines.append(f"Pending actions: {len(actions)}")
        lines.extend(f"  {_action_line(action)}" for action in actions)
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def resume_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = build_orchestrator(settings=settings, repository=repository)
            outcome = asyncio.run(orchestrator.resume_job(command.job_id))
        return [
            f"Job resumed: {outcome.job_id} status={outcome.status.value}",
            outcome.response,
        ]

    def cancel_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = repository.request_cancel(job_id=command.job_id)
        return [f"Cancel requested: {job.job_id} status={job.status.value}"]

    def list_actions(self, command: ListActionsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = (
            PendingActionStatus(command.status.strip().lower()) if command.status else None
        )
        with _repository(settings) as repository:
            actions = repository.list_pending_actions(
                status=status_filter,
                job_id=command.job_id,
                limit=command.limit,
            )
        lines = [f"Actions: {len(actions)}"]
        lines.extend(f"  {_action_line(action)}" for action in actions)
        return lines

    def approve_action(self, command: ActionCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = asyncio.run(build_action_service(repository).approve(command.action_id))
        if result.already_executed:
            return [f"Action already executed: {command.action_id}", result.message]
        if result.in_progress:
            return [f"Action is being executed: {command.action_id}", result.message]
        if not result.success:
            return [f"Action approved but execution failed: {command.action_id}", result.message]
        return [f"Action executed: {command.action_id}", result.message]

    def reject_action(self, command: ActionCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            action = asyncio.run(build_action_service(repository).reject(command.action_id))
        return [f"Action rejected: {action.action_id}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _format_optional(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _parse_job_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _job_line(job: JobView) -> str:
    return (
        f"{job.job_id} status={job.status.value} "
        f"capability={job.assigned_capability or job.requested_capability or '-'} "
        f"retries={job.retry_count}/{job.max_retries} created_at={job.created_at.isoformat()}"
    )


def _action_line(action: PendingActionView) -> str:
    return (
        f"{action.action_id} job={action.job_id} type={action.action_type.value} "
        f"status={action.status.value} {action.preview.get('description', '')}"
    ).rstrip()


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        user_id=settings.user_context.user_id,
        busy_timeout_ms=settings.orchestrator.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
