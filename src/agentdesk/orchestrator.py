"""Job orchestrator: sequences classification, knowledge, execution and validation.

One ``process_job`` call drives a claimed job through repeated attempts. Each
attempt re-runs the whole pipeline from classification; a failed attempt
increments ``retry_count`` exactly once and the job stays ``running`` until it
reaches a terminal status, blocks on a sub-job, or exhausts its retry budget.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from agentdesk.actions import ActionService
from agentdesk.capabilities.registry import CapabilityRegistry
from agentdesk.classification import IntentClassifier, clarification_prompt, needs_clarification
from agentdesk.config import OrchestratorSettings
from agentdesk.errors import (
    CapabilityExecutionError,
    ClassificationUnavailableError,
    JobCanceledError,
    JobNotFoundError,
    JobStateError,
    KnowledgeNotReadyError,
    OrchestratorError,
    StageTimeoutError,
)
from agentdesk.jobs.models import (
    CapabilityResult,
    FailureClass,
    Intent,
    JobCreate,
    JobStatus,
    JobView,
    MemoryEntry,
    NextAction,
    SubTaskRequest,
)
from agentdesk.jobs.repository import JobRepository
from agentdesk.knowledge import KnowledgeContext, KnowledgeGate
from agentdesk.quality import QualityGate
from agentdesk.response import (
    CANCELED_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    HUMAN_REVIEW_MESSAGE,
    STILL_PROCESSING_MESSAGE,
    format_response,
)
from agentdesk.routing import RoutingPlan, RoutingTable
from agentdesk.scheduler import ExecutionPlan, ExecutionStep, ParallelExecutor, StepInput
from agentdesk.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MEMORY_PREVIEW_CHARS = 500


@dataclass(slots=True)
class JobOutcome:
    """What one ``process_job`` call reports back to its caller."""

    job_id: str
    status: JobStatus
    response: str
    retry_count: int
    child_job_id: str | None = None
    pending_action_id: str | None = None


class _QualityRejected(Exception):
    """Gate verdict for one attempt; handled inside the attempt loop."""

    def __init__(self, failure_class: FailureClass, feedback: str) -> None:
        super().__init__(feedback)
        self.failure_class = failure_class


class JobOrchestrator:
    """Central coordinator built from explicitly passed collaborators."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        classifier: IntentClassifier,
        routing: RoutingTable,
        knowledge_gate: KnowledgeGate,
        registry: CapabilityRegistry,
        executor: ParallelExecutor,
        quality_gate: QualityGate,
        actions: ActionService | None,
        settings: OrchestratorSettings,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.classifier = classifier
        self.routing = routing
        self.knowledge_gate = knowledge_gate
        self.registry = registry
        self.executor = executor
        self.quality_gate = quality_gate
        self.actions = actions
        self.settings = settings
        self.worker_id = worker_id or f"inline-{os.getpid()}"

    async def submit_request(
        self,
        raw_input: str,
        *,
        user_id: str,
        client_id: str | None = None,
    ) -> JobOutcome:
        """Enqueue one request and process it in-process right away."""

        job = await self._store(
            self.repository.enqueue_job,
            JobCreate(
                raw_input=raw_input,
                user_id=user_id,
                client_id=client_id,
                max_retries=self.settings.max_retries,
            ),
        )
        claimed = await self._store(
            self.repository.claim_job_by_id,
            job_id=job.job_id,
            worker_id=self.worker_id,
        )
        if claimed is None:
            current = await self._load(job.job_id)
            if current.cancel_requested_at is not None:
                logger.info("Job canceled before processing job_id=%s", job.job_id)
                return JobOutcome(
                    job_id=job.job_id,
                    status=current.status,
                    response=CANCELED_MESSAGE,
                    retry_count=current.retry_count,
                )
            raise JobStateError(f"Job {job.job_id} was claimed by another worker")
        return await self.process_job(claimed)

    async def request_cancel(self, job_id: str) -> JobView:
        """Flag a job for cancellation at its next stage boundary."""

        job = await self._store(self.repository.request_cancel, job_id=job_id)
        logger.info("Cancel requested job_id=%s status=%s", job_id, job.status.value)
        return job

    async def resume_job(self, job_id: str) -> JobOutcome:
        """Resume a blocked parent once all of its sub-jobs are terminal."""

        job = await self._load(job_id)
        if job.status != JobStatus.BLOCKED:
            raise JobStateError(
                f"Only blocked jobs can be resumed, job {job_id} is {job.status.value}",
            )
        children = await self._store(self.repository.list_children, job_id)
        open_children = [child.job_id for child in children if not child.is_terminal]
        if open_children:
            raise JobStateError(
                f"Job {job_id} still waits for sub-jobs: {', '.join(open_children)}",
            )

        resumed = await self._store(
            self.repository.resume_job,
            job_id=job_id,
            worker_id=self.worker_id,
        )
        if not resumed:
            raise JobStateError(f"Job {job_id} changed status concurrently while resuming")
        logger.info("Job resumed job_id=%s children=%d", job_id, len(children))

        await self._remember(
            job_id,
            [
                MemoryEntry(
                    role="capability",
                    content=_child_summary(child),
                    capability_id=child.assigned_capability or child.requested_capability,
                    created_at=utc_now(),
                )
                for child in children
            ],
        )
        return await self.process_job(await self._load(job_id))

    async def process_job(self, job: JobView) -> JobOutcome:
        """Drive a claimed job until it is terminal or blocked."""

        job_id = job.job_id
        if job.status != JobStatus.RUNNING:
            raise JobStateError(f"Job {job_id} must be running, got {job.status.value}")
        logger.info("Processing job job_id=%s retry_count=%d", job_id, job.retry_count)

        while True:
            try:
                return await self._run_attempt(job_id)
            except _QualityRejected as rejection:
                outcome = await self._record_failed_attempt(
                    job_id,
                    failure_class=rejection.failure_class,
                    error_summary=str(rejection),
                )
            except OrchestratorError as error:
                if not error.retryable:
                    return await self._fail(job_id, error)
                outcome = await self._record_failed_attempt(
                    job_id,
                    failure_class=error.failure_class,
                    error_summary=str(error),
                )
            except Exception as error:
                logger.exception("Unexpected error while processing job_id=%s", job_id)
                await self._persist_failure(
                    job_id,
                    failure_class=FailureClass.UNEXPECTED_ERROR,
                    error_summary=f"{type(error).__name__}: {error}",
                )
                raise
            if outcome is not None:
                return outcome

    async def _run_attempt(self, job_id: str) -> JobOutcome:
        await self._check_cancel(job_id)
        job = await self._load(job_id)

        intent = await self._classify(job)
        await self._store(self.repository.update_intent, job_id=job_id, intent=intent)
        threshold = self.settings.clarification_threshold
        if needs_clarification(intent, threshold=threshold):
            return await self._request_clarification(job, intent)

        await self._check_cancel(job_id)
        plan = self.routing.resolve(
            intent,
            job.raw_input,
            requested_capability=job.requested_capability,
        )
        if plan.below_threshold:
            logger.warning(
                "Intent confidence below routing threshold job_id=%s intent=%s confidence=%.2f",
                job_id,
                intent.primary,
                intent.confidence,
            )
        await self._audit(
            job_id,
            "routing_resolved",
            {
                "capability": plan.capability_id,
                "below_threshold": plan.below_threshold,
                "steps": [step.step_id for step in plan.steps],
            },
        )

        await self._check_cancel(job_id)
        await self.knowledge_gate.gather(
            job_id=job_id,
            query=plan.knowledge_query or job.raw_input,
            context=KnowledgeContext(user_id=job.user_id, client_id=job.client_id),
        )

        await self._check_cancel(job_id)
        execution_plan = self._resolve_capabilities(plan, job, intent)
        await self._store(
            self.repository.assign_capability,
            job_id=job_id,
            capability_id=plan.capability_id,
        )

        job = await self._load(job_id)
        if job.knowledge_pack is None or not job.knowledge_pack.ready:
            raise KnowledgeNotReadyError(job_id)
        children = await self._store(self.repository.list_children, job_id)
        result = await self._execute(job, plan, execution_plan, children)
        await self._remember(
            job_id,
            [
                MemoryEntry(
                    role="capability",
                    content=result.output[:_MEMORY_PREVIEW_CHARS],
                    capability_id=plan.capability_id,
                    created_at=utc_now(),
                ),
            ],
        )

        if result.needs_subtask and result.sub_task_request is not None:
            child = await self._subtask_child(job, result.sub_task_request, children)
            if result.sub_task_request.blocking and not child.is_terminal:
                return await self._block(job, child)

        await self._check_cancel(job_id)
        await self._store(self.repository.update_result, job_id=job_id, result=result)
        if result.next_action == NextAction.NEEDS_REVIEW:
            return await self._hand_over_for_review(job, plan.capability_id)
        validation = self.quality_gate.evaluate(job, result)
        await self._store(self.repository.update_validation, job_id=job_id, validation=validation)
        if not validation.passed:
            raise _QualityRejected(
                FailureClass.QUALITY_REJECTED if result.success else FailureClass.CAPABILITY_ERROR,
                validation.feedback or "quality gate rejected the result",
            )

        await self._check_cancel(job_id)
        pending_action_id = await self._prepare_action(job, result)
        response = format_response(result, job_id=job_id)
        completed = await self._store(self.repository.complete_job, job_id=job_id)
        if not completed:
            raise JobStateError(f"Job {job_id} changed status concurrently while completing")
        await self._remember(
            job_id,
            [MemoryEntry(role="assistant", content=response, created_at=utc_now())],
        )
        logger.info("Job completed job_id=%s capability=%s", job_id, plan.capability_id)
        return JobOutcome(
            job_id=job_id,
            status=JobStatus.DONE,
            response=response,
            retry_count=job.retry_count,
            pending_action_id=pending_action_id,
        )

    async def _classify(self, job: JobView) -> Intent:
        timeout = self.settings.classify_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.classifier.classify(job.raw_input, job_id=job.job_id, user_id=job.user_id),
                timeout=timeout,
            )
        except TimeoutError as error:
            raise StageTimeoutError("classify", timeout) from error
        except Exception as error:  # noqa: BLE001
            raise ClassificationUnavailableError(
                f"Intent classifier failed for job {job.job_id}: {error}",
            ) from error

    async def _request_clarification(self, job: JobView, intent: Intent) -> JobOutcome:
        prompt = clarification_prompt(intent, threshold=self.settings.clarification_threshold)
        logger.info(
            "Clarification needed job_id=%s intent=%s confidence=%.2f",
            job.job_id,
            intent.primary,
            intent.confidence,
        )
        moved = await self._store(
            self.repository.mark_needs_human_review,
            job_id=job.job_id,
            reason="clarification requested",
        )
        if not moved:
            raise JobStateError(f"Job {job.job_id} changed status concurrently")
        await self._remember(
            job.job_id,
            [MemoryEntry(role="assistant", content=prompt, created_at=utc_now())],
        )
        return JobOutcome(
            job_id=job.job_id,
            status=JobStatus.NEEDS_HUMAN_REVIEW,
            response=prompt,
            retry_count=job.retry_count,
        )

    def _resolve_capabilities(
        self,
        plan: RoutingPlan,
        job: JobView,
        intent: Intent,
    ) -> ExecutionPlan | None:
        if not plan.is_multi_step:
            capability = self.registry.get(plan.capability_id)
            if job.requested_capability is None and not capability.can_handle(intent):
                self._reroute(plan, intent, job_id=job.job_id)
            return None
        execution_plan = ExecutionPlan.from_planned_steps(
            plan.steps,
            base_payload={"raw_input": job.raw_input},
        )
        execution_plan.batches()
        for capability_id in execution_plan.capability_ids():
            self.registry.get(capability_id)
        return execution_plan

    def _reroute(self, plan: RoutingPlan, intent: Intent, *, job_id: str) -> None:
        """Swap a routed capability that declines the intent for one that accepts it."""

        alternative = self.registry.find_for_intent(intent)
        if alternative is None:
            logger.warning(
                "No capability accepts intent, keeping route job_id=%s intent=%s capability=%s",
                job_id,
                intent.primary,
                plan.capability_id,
            )
            return
        logger.info(
            "Capability declined intent job_id=%s intent=%s declined=%s rerouted=%s",
            job_id,
            intent.primary,
            plan.capability_id,
            alternative.capability_id,
        )
        plan.capability_id = alternative.capability_id

    async def _execute(
        self,
        job: JobView,
        plan: RoutingPlan,
        execution_plan: ExecutionPlan | None,
        children: list[JobView],
    ) -> CapabilityResult:
        if execution_plan is not None:
            execution = await self.executor.execute(execution_plan, job)
            logger.info(
                "Plan executed job_id=%s success=%s summary=%s",
                job.job_id,
                execution.success,
                execution.summary,
            )
            return execution.to_capability_result()

        capability = self.registry.get(plan.capability_id)
        timeout = self.settings.capability_timeout_seconds
        logger.info("Executing capability job_id=%s capability=%s", job.job_id, plan.capability_id)
        try:
            return await asyncio.wait_for(
                capability.execute(job, _subtask_input(plan.capability_id, job, children)),
                timeout=timeout,
            )
        except TimeoutError as error:
            raise StageTimeoutError("capability", timeout) from error
        except Exception as error:  # noqa: BLE001
            raise CapabilityExecutionError(
                f"Capability {plan.capability_id} raised: {type(error).__name__}: {error}",
            ) from error

    async def _subtask_child(
        self,
        job: JobView,
        request: SubTaskRequest,
        children: list[JobView],
    ) -> JobView:
        """Existing child for the same target and task, else a newly spawned one."""

        for child in children:
            if child.requested_capability == request.target_capability and (
                child.raw_input == request.task
            ):
                logger.info(
                    "Sub-task already requested parent_job_id=%s child_job_id=%s status=%s",
                    job.job_id,
                    child.job_id,
                    child.status.value,
                )
                return child
        return await self._spawn_subtask(job, request)

    async def _spawn_subtask(self, job: JobView, request: SubTaskRequest) -> JobView:
        child = await self._store(
            self.repository.enqueue_job,
            JobCreate(
                raw_input=request.task,
                user_id=job.user_id,
                client_id=job.client_id,
                parent_job_id=job.job_id,
                requested_capability=request.target_capability,
                max_retries=self.settings.max_retries,
                initial_memory=[
                    MemoryEntry(
                        role="system",
                        content=json.dumps(request.context, ensure_ascii=False, sort_keys=True),
                        capability_id=request.target_capability,
                        created_at=utc_now(),
                    ),
                ],
            ),
        )
        logger.info(
            "Sub-task created parent_job_id=%s child_job_id=%s target=%s",
            job.job_id,
            child.job_id,
            request.target_capability,
        )
        return child

    async def _block(self, job: JobView, child: JobView) -> JobOutcome:
        blocked = await self._store(
            self.repository.block_job,
            job_id=job.job_id,
            child_job_id=child.job_id,
        )
        if not blocked:
            raise JobStateError(f"Job {job.job_id} changed status concurrently while blocking")
        return JobOutcome(
            job_id=job.job_id,
            status=JobStatus.BLOCKED,
            response=STILL_PROCESSING_MESSAGE,
            retry_count=job.retry_count,
            child_job_id=child.job_id,
        )

    async def _hand_over_for_review(self, job: JobView, capability_id: str) -> JobOutcome:
        moved = await self._store(
            self.repository.mark_needs_human_review,
            job_id=job.job_id,
            reason=f"capability {capability_id} requested review",
        )
        if not moved:
            raise JobStateError(f"Job {job.job_id} changed status concurrently")
        logger.info(
            "Capability requested review job_id=%s capability=%s",
            job.job_id,
            capability_id,
        )
        return JobOutcome(
            job_id=job.job_id,
            status=JobStatus.NEEDS_HUMAN_REVIEW,
            response=HUMAN_REVIEW_MESSAGE,
            retry_count=job.retry_count,
        )

    async def _prepare_action(self, job: JobView, result: CapabilityResult) -> str | None:
        if self.actions is None or not result.success:
            return None
        try:
            action = await self.actions.prepare_for_job(job, result)
        except (SQLAlchemyError, OrchestratorError) as error:
            logger.warning("Could not prepare action job_id=%s error=%s", job.job_id, error)
            return None
        return action.action_id if action is not None else None

    async def _record_failed_attempt(
        self,
        job_id: str,
        *,
        failure_class: FailureClass,
        error_summary: str,
    ) -> JobOutcome | None:
        retry_count = await self._store(
            self.repository.increment_retry_count,
            job_id=job_id,
            failure_class=failure_class,
            error_summary=error_summary,
        )
        if retry_count is None:
            raise JobStateError(f"Job {job_id} is no longer running")
        job = await self._load(job_id)
        await self._remember(
            job_id,
            [
                MemoryEntry(
                    role="system",
                    content=(
                        f"Attempt {retry_count} failed ({failure_class.value}): {error_summary}"
                    ),
                    created_at=utc_now(),
                ),
            ],
        )
        if retry_count >= job.max_retries:
            logger.warning(
                "Retry limit reached job_id=%s retry_count=%d failure_class=%s",
                job_id,
                retry_count,
                failure_class.value,
            )
            await self._store(
                self.repository.mark_needs_human_review,
                job_id=job_id,
                reason=f"retry limit reached after {retry_count} failed attempts: {error_summary}",
                failure_class=failure_class,
            )
            return JobOutcome(
                job_id=job_id,
                status=JobStatus.NEEDS_HUMAN_REVIEW,
                response=HUMAN_REVIEW_MESSAGE,
                retry_count=retry_count,
            )
        logger.warning(
            "Attempt failed, retrying job_id=%s retry_count=%d/%d failure_class=%s error=%s",
            job_id,
            retry_count,
            job.max_retries,
            failure_class.value,
            error_summary,
        )
        return None

    async def _fail(self, job_id: str, error: OrchestratorError) -> JobOutcome:
        logger.error(
            "Job failed job_id=%s failure_class=%s error=%s",
            job_id,
            error.failure_class.value,
            error,
        )
        await self._persist_failure(
            job_id,
            failure_class=error.failure_class,
            error_summary=str(error),
        )
        job = await self._load(job_id)
        return JobOutcome(
            job_id=job_id,
            status=job.status,
            response=GENERIC_FAILURE_MESSAGE,
            retry_count=job.retry_count,
        )

    async def _persist_failure(
        self,
        job_id: str,
        *,
        failure_class: FailureClass,
        error_summary: str,
    ) -> None:
        try:
            failed = await self._store(
                self.repository.fail_job,
                job_id=job_id,
                failure_class=failure_class,
                error_summary=error_summary,
            )
        except SQLAlchemyError:
            logger.exception("Could not persist failure job_id=%s", job_id)
            return
        if not failed:
            logger.warning("Job was not running when marking failed job_id=%s", job_id)

    async def _check_cancel(self, job_id: str) -> None:
        if await self._store(self.repository.is_cancel_requested, job_id):
            raise JobCanceledError(job_id)

    async def _load(self, job_id: str) -> JobView:
        job = await self._store(self.repository.get_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _remember(self, job_id: str, entries: list[MemoryEntry]) -> None:
        try:
            await self._store(self.repository.append_memory, job_id=job_id, entries=entries)
        except (SQLAlchemyError, JobNotFoundError) as error:
            logger.warning("Could not append memory job_id=%s error=%s", job_id, error)

    async def _audit(self, job_id: str, event_type: str, details: dict[str, object]) -> None:
        try:
            await self._store(
                self.repository.add_job_event,
                job_id=job_id,
                event_type=event_type,
                details=details,
            )
        except SQLAlchemyError as error:
            logger.warning("Could not write audit event job_id=%s error=%s", job_id, error)

    async def _store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)


def _subtask_input(capability_id: str, job: JobView, children: list[JobView]) -> StepInput | None:
    """Finished sub-job results keyed by child job id, ``None`` without any."""

    upstream = {
        child.job_id: child.result
        for child in children
        if child.is_terminal and child.result is not None
    }
    if not upstream:
        return None
    step = ExecutionStep(
        step_id=job.job_id,
        ordinal=0,
        capability_id=capability_id,
        payload={"raw_input": job.raw_input},
    )
    return StepInput(step=step, upstream=upstream)


def _child_summary(child: JobView) -> str:
    output = child.result.output if child.result is not None else ""
    summary = output[:_MEMORY_PREVIEW_CHARS] or child.error_summary or "no output"
    return f"Sub-job {child.job_id} finished with status {child.status.value}: {summary}"
