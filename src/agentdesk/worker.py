"""Queue worker that claims jobs and drives them through the orchestrator."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agentdesk.jobs.models import JobStatus
from agentdesk.jobs.repository import JobRepository
from agentdesk.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    needs_review: int = 0
    blocked: int = 0
    errors: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.needs_review += other.needs_review
        self.blocked += other.blocked
        self.errors += other.errors
        self.idle_polls += other.idle_polls


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class JobWorker:
    """Consumes queued jobs one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        orchestrator: JobOrchestrator,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.worker_id = worker_id or orchestrator.worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info(
            "Worker stop requested worker_id=%s signal=%s current_job_id=%s",
            self.worker_id,
            signal_name,
            self._current_job_id or "-",
        )

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue.

        Unexpected errors are logged, counted and followed by the error backoff
        sleep; they never escape the worker.
        """

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        try:
            job = await asyncio.to_thread(
                self.repository.claim_next_job,
                worker_id=self.worker_id,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Worker failed to claim job worker_id=%s", self.worker_id)
            summary.errors = 1
            await self._sleep_with_stop(self.error_backoff_seconds)
            return summary

        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            outcome = await self.orchestrator.process_job(job)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Worker failed while processing job_id=%s worker_id=%s",
                job.job_id,
                self.worker_id,
            )
            summary.errors = 1
            await self._sleep_with_stop(self.error_backoff_seconds)
            return summary
        finally:
            self._current_job_id = None

        _count_status(summary, outcome.status)
        logger.info(
            "Worker finished job_id=%s status=%s retry_count=%d",
            outcome.job_id,
            outcome.status.value,
            outcome.retry_count,
        )
        return summary

    async def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_jobs`` processed or too many empty polls.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until a stop signal).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        logger.info("Worker started worker_id=%s", self.worker_id)
        with self._signal_handlers():
            while not self._stop_requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break

                summary = await self.run_once()
                aggregate.add(summary)

                if summary.processed == 0 and summary.errors == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    await self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

        logger.info(
            "Worker stopped worker_id=%s processed=%d signal=%s",
            self.worker_id,
            aggregate.processed,
            self._stop_signal_name or "-",
        )
        return aggregate

    async def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            await asyncio.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _count_status(summary: WorkerRunSummary, status: JobStatus) -> None:
    if status == JobStatus.DONE:
        summary.succeeded = 1
    elif status == JobStatus.FAILED:
        summary.failed = 1
    elif status == JobStatus.NEEDS_HUMAN_REVIEW:
        summary.needs_review = 1
    elif status == JobStatus.BLOCKED:
        summary.blocked = 1

