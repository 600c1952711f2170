from __future__ import annotations

import asyncio

import allure
import pytest

from agentdesk.actions import (
    ActionExecutionResult,
    ActionService,
    DryRunActionExecutor,
    main_action,
    parse_actions,
)
from agentdesk.errors import ActionNotFoundError, ActionStateError
from agentdesk.jobs.models import (
    CapabilityResult,
    JobCreate,
    JobView,
    PendingActionStatus,
    PendingActionType,
    PendingActionView,
)
from agentdesk.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Actions"),
    allure.feature("Approval Flow"),
]

_RESULT = CapabilityResult(success=True, output="Follow-up summary\nwith details")


class _FlakyExecutor:
    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, action: PendingActionView) -> ActionExecutionResult:
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("mail server unreachable")
        return ActionExecutionResult(success=True, message="Sent")


class _SlowExecutor:
    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, action: PendingActionView) -> ActionExecutionResult:
        self.calls += 1
        await asyncio.sleep(0.2)
        return ActionExecutionResult(success=True, message="Sent")


def _running_job(repository: JobRepository, raw_input: str) -> JobView:
    job = repository.enqueue_job(JobCreate(raw_input=raw_input, user_id="u-1"))
    claimed = repository.claim_job_by_id(job_id=job.job_id, worker_id="w-1")
    assert claimed is not None
    return claimed


def _prepare(
    repository: JobRepository,
    service: ActionService,
    raw_input: str = "Summarize the call and send it to Anna about the renewal",
) -> PendingActionView:
    job = _running_job(repository, raw_input)
    action = asyncio.run(service.prepare_for_job(job, _RESULT))
    assert action is not None
    return action


def test_parse_actions_detects_email_recipients_and_subject() -> None:
    actions = parse_actions("Subject: Q3 renewal\nPlease send it to Anna and Boris")

    assert len(actions) == 1
    email = actions[0]
    assert email.action_type == PendingActionType.SEND_EMAIL
    assert email.recipients == ["Anna", "Boris"]
    assert email.subject == "Q3 renewal"


def test_parse_actions_detects_task_and_event() -> None:
    task = main_action("Create a task: call Acme tomorrow. Thanks")
    event = main_action("Schedule a meeting with Dana, next week")

    assert task is not None
    assert task.action_type == PendingActionType.CREATE_TASK
    assert task.title == "call Acme tomorrow"
    assert event is not None
    assert event.action_type == PendingActionType.CREATE_EVENT
    assert event.recipients == ["Dana"]


def test_main_action_prefers_highest_confidence() -> None:
    action = main_action("Create a task to review the deck and email to Carla")

    assert action is not None
    assert action.action_type == PendingActionType.SEND_EMAIL


def test_plain_request_has_no_action() -> None:
    assert parse_actions("What is our media strategy?") == []


def test_prepare_builds_pending_email_preview(repository: JobRepository) -> None:
    service = ActionService(repository=repository, executor=DryRunActionExecutor())

    action = _prepare(repository, service)

    assert action.status == PendingActionStatus.PENDING
    assert action.action_type == PendingActionType.SEND_EMAIL
    assert action.preview["recipient"] == "Anna"
    assert action.parameters["to"] == ["Anna"]
    assert action.parameters["subject"] == "Follow-up summary"
    assert action.parameters["body"] == _RESULT.output


def test_prepare_skips_requests_without_actions(
    repository: JobRepository,
    running_job: JobView,
) -> None:
    service = ActionService(repository=repository, executor=DryRunActionExecutor())

    assert asyncio.run(service.prepare_for_job(running_job, _RESULT)) is None
    assert repository.list_pending_actions() == []


def test_approve_executes_once_and_is_idempotent(repository: JobRepository) -> None:
    executor = DryRunActionExecutor()
    service = ActionService(repository=repository, executor=executor)
    action = _prepare(repository, service)

    first = asyncio.run(service.approve(action.action_id))
    second = asyncio.run(service.approve(action.action_id))

    assert first.success is True
    assert first.already_executed is False
    assert second.already_executed is True
    assert second.message == first.message
    assert len(executor.executed) == 1
    stored = repository.get_pending_action(action.action_id)
    assert stored is not None
    assert stored.status == PendingActionStatus.EXECUTED
    assert stored.executed_at is not None


def test_reject_blocks_later_approval(repository: JobRepository) -> None:
    executor = DryRunActionExecutor()
    service = ActionService(repository=repository, executor=executor)
    action = _prepare(repository, service)

    rejected = asyncio.run(service.reject(action.action_id))
    again = asyncio.run(service.reject(action.action_id))

    assert rejected.status == PendingActionStatus.REJECTED
    assert again.status == PendingActionStatus.REJECTED
    with pytest.raises(ActionStateError, match="was rejected"):
        asyncio.run(service.approve(action.action_id))
    assert executor.executed == []


def test_concurrent_approvals_execute_once(repository: JobRepository) -> None:
    executor = _SlowExecutor()
    service = ActionService(repository=repository, executor=executor)
    action = _prepare(repository, service)

    async def _approve_twice() -> list[ActionExecutionResult]:
        return list(
            await asyncio.gather(
                service.approve(action.action_id),
                service.approve(action.action_id),
            ),
        )

    results = asyncio.run(_approve_twice())

    assert executor.calls == 1
    assert [result.success for result in results].count(True) == 1
    assert [result.in_progress for result in results].count(True) == 1
    stored = repository.get_pending_action(action.action_id)
    assert stored is not None
    assert stored.status == PendingActionStatus.EXECUTED


def test_approve_while_executing_does_not_run_executor(repository: JobRepository) -> None:
    executor = DryRunActionExecutor()
    service = ActionService(repository=repository, executor=executor)
    action = _prepare(repository, service)
    repository.transition_pending_action(
        action_id=action.action_id,
        status_from=PendingActionStatus.PENDING,
        status_to=PendingActionStatus.EXECUTING,
    )

    result = asyncio.run(service.approve(action.action_id))

    assert result.in_progress is True
    assert result.success is False
    assert executor.executed == []
    with pytest.raises(ActionStateError, match="cannot be rejected"):
        asyncio.run(service.reject(action.action_id))


def test_executed_action_cannot_be_rejected(repository: JobRepository) -> None:
    service = ActionService(repository=repository, executor=DryRunActionExecutor())
    action = _prepare(repository, service)
    asyncio.run(service.approve(action.action_id))

    with pytest.raises(ActionStateError, match="cannot be rejected"):
        asyncio.run(service.reject(action.action_id))


def test_failed_execution_leaves_action_approved_for_retry(repository: JobRepository) -> None:
    executor = _FlakyExecutor()
    service = ActionService(repository=repository, executor=executor)
    action = _prepare(repository, service)

    failed = asyncio.run(service.approve(action.action_id))
    stored = repository.get_pending_action(action.action_id)
    assert failed.success is False
    assert "mail server unreachable" in failed.message
    assert stored is not None
    assert stored.status == PendingActionStatus.APPROVED
    assert stored.result_message == failed.message

    retried = asyncio.run(service.approve(action.action_id))
    assert retried.success is True
    assert executor.calls == 2
    stored = repository.get_pending_action(action.action_id)
    assert stored is not None
    assert stored.status == PendingActionStatus.EXECUTED


def test_unknown_action_id_raises(repository: JobRepository) -> None:
    service = ActionService(repository=repository, executor=DryRunActionExecutor())

    with pytest.raises(ActionNotFoundError):
        asyncio.run(service.approve("missing"))
    with pytest.raises(ActionNotFoundError):
        asyncio.run(service.reject("missing"))
