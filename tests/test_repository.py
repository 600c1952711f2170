from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from agentdesk.errors import JobNotFoundError, JobStateError
from agentdesk.jobs.models import (
    CapabilityResult,
    FailureClass,
    Intent,
    JobCreate,
    JobStatus,
    JobView,
    KnowledgeChunk,
    KnowledgeDocument,
    KnowledgePack,
    MemoryEntry,
    PendingActionCreate,
    PendingActionStatus,
    PendingActionType,
    ResultConfidence,
)
from agentdesk.jobs.repository import JobRepository
from agentdesk.storage.common import utc_now

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Claiming & Status Transitions"),
]


def _enqueue(repository: JobRepository, raw_input: str = "hello there team") -> JobView:
    return repository.enqueue_job(JobCreate(raw_input=raw_input, user_id="u-1"))


def test_enqueue_creates_queued_job_with_enqueued_event(repository: JobRepository) -> None:
    job = _enqueue(repository)

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.intent is None
    assert job.memory == []
    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to == JobStatus.QUEUED


def test_enqueue_child_job_links_parent_and_writes_events(repository: JobRepository) -> None:
    parent = _enqueue(repository, "parent request")

    child = repository.enqueue_job(
        JobCreate(
            raw_input="find brand facts",
            user_id="u-1",
            parent_job_id=parent.job_id,
            requested_capability="research/brand",
        ),
    )

    assert child.parent_job_id == parent.job_id
    assert [job.job_id for job in repository.list_children(parent.job_id)] == [child.job_id]
    details = repository.get_job_details(child.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].details["parent_job_id"] == parent.job_id


def test_claim_next_job_takes_oldest_queued_job(repository: JobRepository) -> None:
    first = _enqueue(repository, "first request")
    _enqueue(repository, "second request")

    claimed = repository.claim_next_job(worker_id="w-1")

    assert claimed is not None
    assert claimed.job_id == first.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "w-1"
    assert claimed.started_at is not None


def test_claim_next_job_returns_none_on_empty_queue(repository: JobRepository) -> None:
    assert repository.claim_next_job(worker_id="w-1") is None


def test_concurrent_claims_have_exactly_one_winner(db_path: Path) -> None:
    setup = JobRepository(db_path)
    setup.init_schema()
    job = _enqueue(setup)
    setup.close()

    start = threading.Barrier(6)
    results: list[JobView | None] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        repository = JobRepository(db_path, busy_timeout_ms=10_000)
        try:
            start.wait(timeout=5)
            claimed = repository.claim_job_by_id(job_id=job.job_id, worker_id=worker_id)
            with lock:
                results.append(claimed)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim, args=(f"w-{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=20)

    winners = [claimed for claimed in results if claimed is not None]
    assert len(results) == 6
    assert len(winners) == 1

    check = JobRepository(db_path)
    details = check.get_job_details(job.job_id)
    check.close()
    assert details is not None
    assert [event.event_type for event in details.events].count("claimed") == 1
    assert details.job.worker_id == winners[0].worker_id


def test_complete_moves_running_to_done(repository: JobRepository, running_job: JobView) -> None:
    assert repository.complete_job(job_id=running_job.job_id) is True

    job = repository.require_job(running_job.job_id)
    assert job.status == JobStatus.DONE
    assert job.completed_at is not None
    assert job.is_terminal


def test_terminal_jobs_never_move_again(repository: JobRepository, running_job: JobView) -> None:
    repository.fail_job(
        job_id=running_job.job_id,
        failure_class=FailureClass.CAPABILITY_NOT_FOUND,
        error_summary="Capability not found: x/y",
    )

    assert repository.complete_job(job_id=running_job.job_id) is False
    assert repository.claim_job_by_id(job_id=running_job.job_id, worker_id="w-2") is None
    job = repository.require_job(running_job.job_id)
    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.CAPABILITY_NOT_FOUND


def test_block_and_resume_round_trip(repository: JobRepository, running_job: JobView) -> None:
    assert repository.block_job(job_id=running_job.job_id, child_job_id="child-1") is True
    assert repository.require_job(running_job.job_id).status == JobStatus.BLOCKED
    assert repository.complete_job(job_id=running_job.job_id) is False

    assert repository.resume_job(job_id=running_job.job_id, worker_id="w-9") is True
    resumed = repository.require_job(running_job.job_id)
    assert resumed.status == JobStatus.RUNNING
    assert resumed.worker_id == "w-9"


def test_stage_updates_require_running_status(repository: JobRepository) -> None:
    queued = _enqueue(repository)

    assert repository.update_intent(
        job_id=queued.job_id,
        intent=Intent(primary="general_question", confidence=0.55),
    ) is False
    assert repository.require_job(queued.job_id).intent is None


def test_stage_updates_persist_structured_fields(
    repository: JobRepository,
    running_job: JobView,
) -> None:
    job_id = running_job.job_id
    repository.update_intent(
        job_id=job_id,
        intent=Intent(primary="media_strategy", confidence=0.8, entities={"client_name": "Acme"}),
    )
    repository.update_knowledge_pack(
        job_id=job_id,
        pack=KnowledgePack(
            ready=True,
            documents=[KnowledgeDocument(document_id="d-1", title="Brief", source="drive")],
            chunks=[KnowledgeChunk(document_id="d-1", content="Acme brief", source="drive")],
            query="client:Acme briefs",
        ),
    )
    repository.assign_capability(job_id=job_id, capability_id="media/strategy")
    repository.update_result(
        job_id=job_id,
        result=CapabilityResult(
            success=True,
            output="Plan",
            confidence=ResultConfidence.HIGH,
        ),
    )

    job = repository.require_job(job_id)
    assert job.intent == Intent(
        primary="media_strategy",
        confidence=0.8,
        entities={"client_name": "Acme"},
    )
    assert job.knowledge_pack is not None
    assert job.knowledge_pack.ready is True
    assert job.knowledge_pack.chunks[0].content == "Acme brief"
    assert job.assigned_capability == "media/strategy"
    assert job.result is not None
    assert job.result.confidence == ResultConfidence.HIGH


def test_increment_retry_count_records_attempt(
    repository: JobRepository,
    running_job: JobView,
) -> None:
    first = repository.increment_retry_count(
        job_id=running_job.job_id,
        failure_class=FailureClass.QUALITY_REJECTED,
        error_summary="output is empty",
    )
    second = repository.increment_retry_count(
        job_id=running_job.job_id,
        failure_class=FailureClass.STAGE_TIMEOUT,
        error_summary="Stage 'capability' timed out after 2.0s",
    )

    assert (first, second) == (1, 2)
    job = repository.require_job(running_job.job_id)
    assert job.status == JobStatus.RUNNING
    assert job.retry_count == 2
    assert job.failure_class == FailureClass.STAGE_TIMEOUT


def test_increment_retry_count_ignores_non_running_jobs(repository: JobRepository) -> None:
    queued = _enqueue(repository)

    assert repository.increment_retry_count(
        job_id=queued.job_id,
        failure_class=FailureClass.CAPABILITY_ERROR,
        error_summary="boom",
    ) is None
    assert repository.require_job(queued.job_id).retry_count == 0


def test_append_memory_keeps_order(repository: JobRepository, running_job: JobView) -> None:
    now = utc_now()
    repository.append_memory(
        job_id=running_job.job_id,
        entries=[MemoryEntry(role="user", content="one", created_at=now)],
    )
    repository.append_memory(
        job_id=running_job.job_id,
        entries=[
            MemoryEntry(role="capability", content="two", created_at=now, capability_id="a/b"),
            MemoryEntry(role="assistant", content="three", created_at=now),
        ],
    )

    memory = repository.require_job(running_job.job_id).memory
    assert [entry.content for entry in memory] == ["one", "two", "three"]
    assert memory[1].capability_id == "a/b"


def test_cancel_requested_queued_job_is_failed_on_claim(repository: JobRepository) -> None:
    canceled = _enqueue(repository, "cancel me")
    survivor = _enqueue(repository, "keep me")
    repository.request_cancel(job_id=canceled.job_id)

    claimed = repository.claim_next_job(worker_id="w-1")

    assert claimed is not None
    assert claimed.job_id == survivor.job_id
    failed = repository.require_job(canceled.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.CANCELED


def test_claim_by_id_fails_cancel_requested_job(repository: JobRepository) -> None:
    job = _enqueue(repository, "cancel me")
    repository.request_cancel(job_id=job.job_id)

    assert repository.claim_job_by_id(job_id=job.job_id, worker_id="w-1") is None

    failed = repository.require_job(job.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.CANCELED
    assert repository.claim_next_job(worker_id="w-1") is None


def test_request_cancel_rejects_terminal_job(
    repository: JobRepository,
    running_job: JobView,
) -> None:
    repository.complete_job(job_id=running_job.job_id)

    with pytest.raises(JobStateError, match="cannot be canceled"):
        repository.request_cancel(job_id=running_job.job_id)


def test_missing_job_raises_not_found(repository: JobRepository) -> None:
    assert repository.get_job("missing") is None
    with pytest.raises(JobNotFoundError):
        repository.require_job("missing")
    with pytest.raises(JobNotFoundError):
        repository.request_cancel(job_id="missing")


def test_list_children_returns_sub_jobs(repository: JobRepository, running_job: JobView) -> None:
    child = repository.enqueue_job(
        JobCreate(
            raw_input="look up the brand",
            user_id="u-1",
            parent_job_id=running_job.job_id,
            requested_capability="research/brand",
        ),
    )

    children = repository.list_children(running_job.job_id)
    assert [item.job_id for item in children] == [child.job_id]
    assert children[0].requested_capability == "research/brand"


def test_pending_action_transitions_are_guarded(
    repository: JobRepository,
    running_job: JobView,
) -> None:
    action = repository.create_pending_action(
        PendingActionCreate(
            job_id=running_job.job_id,
            user_id="u-1",
            action_type=PendingActionType.CREATE_TASK,
            preview={"title": "Create task"},
            parameters={"task_name": "Call Acme"},
        ),
    )
    assert action.status == PendingActionStatus.PENDING

    assert repository.transition_pending_action(
        action_id=action.action_id,
        status_from=PendingActionStatus.PENDING,
        status_to=PendingActionStatus.APPROVED,
    ) is True
    assert repository.transition_pending_action(
        action_id=action.action_id,
        status_from=PendingActionStatus.PENDING,
        status_to=PendingActionStatus.REJECTED,
    ) is False

    stored = repository.get_pending_action(action.action_id)
    assert stored is not None
    assert stored.status == PendingActionStatus.APPROVED
    assert stored.approved_at is not None
    listed = repository.list_pending_actions(job_id=running_job.job_id)
    assert [item.action_id for item in listed] == [action.action_id]
