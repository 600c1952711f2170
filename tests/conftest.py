"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agentdesk.config import OrchestratorSettings, QualitySettings, Settings, WorkerSettings
from agentdesk.jobs.models import JobCreate, JobView
from agentdesk.jobs.repository import JobRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "agentdesk.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    """Settings with short timeouts so failing stages surface quickly."""

    return Settings(
        db_path=db_path,
        orchestrator=OrchestratorSettings(
            max_retries=3,
            classify_timeout_seconds=2.0,
            knowledge_timeout_seconds=2.0,
            capability_timeout_seconds=2.0,
            step_timeout_seconds=2.0,
        ),
        quality=QualitySettings(),
        worker=WorkerSettings(poll_interval_seconds=0.01, error_backoff_seconds=0.01),
    )


@pytest.fixture()
def running_job(repository: JobRepository) -> JobView:
    job = repository.enqueue_job(
        JobCreate(raw_input="What is our plan for the next quarter?", user_id="u-1"),
    )
    claimed = repository.claim_job_by_id(job_id=job.job_id, worker_id="test-worker")
    assert claimed is not None
    return claimed
