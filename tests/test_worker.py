from __future__ import annotations

import asyncio

import allure

from agentdesk.config import Settings
from agentdesk.jobs.models import JobCreate, JobStatus, JobView
from agentdesk.jobs.repository import JobRepository
from agentdesk.orchestrator import JobOutcome
from agentdesk.services import build_orchestrator
from agentdesk.worker import JobWorker, WorkerRunSummary

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Queue Polling"),
]


class _ExplodingOrchestrator:
    worker_id = "exploding-worker"

    def __init__(self) -> None:
        self.calls = 0

    async def process_job(self, job: JobView) -> JobOutcome:
        self.calls += 1
        raise RuntimeError("orchestrator crashed")


class _BrokenQueue:
    def claim_next_job(self, *, worker_id: str) -> JobView | None:
        raise OSError("database is locked")


def _worker(repository: JobRepository, settings: Settings) -> JobWorker:
    return JobWorker(
        repository=repository,
        orchestrator=build_orchestrator(
            settings=settings,
            repository=repository,
            worker_id="worker-test",
        ),
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        error_backoff_seconds=settings.worker.error_backoff_seconds,
    )


def _enqueue(repository: JobRepository, raw_input: str) -> JobView:
    return repository.enqueue_job(JobCreate(raw_input=raw_input, user_id="u-1"))


def test_run_once_reports_idle_poll_on_empty_queue(
    repository: JobRepository,
    settings: Settings,
) -> None:
    summary = asyncio.run(_worker(repository, settings).run_once())

    assert summary == WorkerRunSummary(idle_polls=1)


def test_run_once_processes_one_job(repository: JobRepository, settings: Settings) -> None:
    job = _enqueue(repository, "What is our plan for the next quarter?")

    summary = asyncio.run(_worker(repository, settings).run_once())

    assert summary.processed == 1
    assert summary.succeeded == 1
    stored = repository.require_job(job.job_id)
    assert stored.status == JobStatus.DONE
    assert stored.worker_id == "worker-test"


def test_run_once_counts_jobs_sent_to_review(
    repository: JobRepository,
    settings: Settings,
) -> None:
    _enqueue(repository, "hi")

    summary = asyncio.run(_worker(repository, settings).run_once())

    assert summary.processed == 1
    assert summary.needs_review == 1


def test_processing_error_is_counted_and_does_not_escape(
    repository: JobRepository,
    settings: Settings,
) -> None:
    _enqueue(repository, "What is our plan for the next quarter?")
    orchestrator = _ExplodingOrchestrator()
    worker = JobWorker(
        repository=repository,
        orchestrator=orchestrator,
        error_backoff_seconds=0.01,
    )

    summary = asyncio.run(worker.run_once())

    assert orchestrator.calls == 1
    assert summary.processed == 1
    assert summary.errors == 1
    assert worker.worker_id == "exploding-worker"


def test_claim_error_is_counted_and_does_not_escape() -> None:
    worker = JobWorker(
        repository=_BrokenQueue(),
        orchestrator=_ExplodingOrchestrator(),
        error_backoff_seconds=0.01,
    )

    summary = asyncio.run(worker.run_once())

    assert summary.errors == 1
    assert summary.processed == 0


def test_run_loop_drains_queue_then_exits_on_idle_limit(
    repository: JobRepository,
    settings: Settings,
) -> None:
    first = _enqueue(repository, "What is our plan for the next quarter?")
    second = _enqueue(repository, "Who owns the budget for the next event?")

    summary = asyncio.run(_worker(repository, settings).run_loop(max_idle_polls=2))

    assert summary.processed == 2
    assert summary.succeeded == 2
    assert summary.idle_polls == 2
    assert repository.require_job(first.job_id).status == JobStatus.DONE
    assert repository.require_job(second.job_id).status == JobStatus.DONE


def test_run_loop_respects_max_jobs(repository: JobRepository, settings: Settings) -> None:
    first = _enqueue(repository, "What is our plan for the next quarter?")
    second = _enqueue(repository, "Who owns the budget for the next event?")

    summary = asyncio.run(_worker(repository, settings).run_loop(max_jobs=1))

    assert summary.processed == 1
    assert repository.require_job(first.job_id).status == JobStatus.DONE
    assert repository.require_job(second.job_id).status == JobStatus.QUEUED


def test_stop_request_ends_loop_without_claiming(
    repository: JobRepository,
    settings: Settings,
) -> None:
    job = _enqueue(repository, "What is our plan for the next quarter?")
    worker = _worker(repository, settings)
    worker.request_stop(signal_name="SIGTERM")

    summary = asyncio.run(worker.run_loop())

    assert worker.stop_requested is True
    assert summary.processed == 0
    assert repository.require_job(job.job_id).status == JobStatus.QUEUED
