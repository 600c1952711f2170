"""Dependency-aware parallel execution of multi-step capability plans.

Steps are grouped into batches: a batch holds every not yet scheduled step whose
dependencies were all scheduled in earlier batches. Batches run strictly in
sequence; the steps of one batch run concurrently as ``asyncio`` tasks and the
whole batch is joined before the next one is formed. A step failure never
cancels its siblings. A failed ``critical`` step stops the run after the
current batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from agentdesk.capabilities.registry import CapabilityRegistry
from agentdesk.errors import CircularDependencyError, StageTimeoutError
from agentdesk.jobs.models import (
    CapabilityResult,
    Citation,
    JobView,
    NextAction,
    ResultConfidence,
    UsageCounters,
)
from agentdesk.routing import PlannedStep
from agentdesk.storage.common import utc_now

logger = logging.getLogger(__name__)

_CONFIDENCE_RANK = {
    ResultConfidence.LOW: 0,
    ResultConfidence.MEDIUM: 1,
    ResultConfidence.HIGH: 2,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ExecutionStep:
    """One node of the plan graph; dependencies refer to steps of the same plan."""

    step_id: str
    ordinal: int
    capability_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    critical: bool = False


@dataclass(frozen=True, slots=True)
class ExecutionBatch:
    batch_number: int
    steps: tuple[ExecutionStep, ...]

    @property
    def step_ids(self) -> tuple[str, ...]:
        return tuple(step.step_id for step in self.steps)


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    """Immutable ordered step collection created once per orchestration run."""

    steps: tuple[ExecutionStep, ...]

    @classmethod
    def create(cls, steps: Iterable[ExecutionStep]) -> ExecutionPlan:
        """Validate ids and freeze the plan in ordinal order."""

        ordered = sorted(steps, key=lambda step: (step.ordinal, step.step_id))
        seen: set[str] = set()
        for step in ordered:
            if not step.step_id:
                raise ValueError("Execution step id must not be empty")
            if step.step_id in seen:
                raise ValueError(f"Duplicate execution step id: {step.step_id}")
            if step.step_id in step.depends_on:
                raise CircularDependencyError(unresolved=(step.step_id,))
            seen.add(step.step_id)
        return cls(steps=tuple(ordered))

    @classmethod
    def from_planned_steps(
        cls,
        planned: Iterable[PlannedStep],
        *,
        base_payload: Mapping[str, Any] | None = None,
    ) -> ExecutionPlan:
        """Build a plan from routing steps, numbering ordinals from 1."""

        steps = []
        for ordinal, item in enumerate(planned, start=1):
            payload = dict(base_payload or {})
            payload.update(item.payload)
            steps.append(
                ExecutionStep(
                    step_id=item.step_id,
                    ordinal=ordinal,
                    capability_id=item.capability_id,
                    payload=MappingProxyType(payload),
                    depends_on=frozenset(item.depends_on),
                    critical=item.critical,
                ),
            )
        return cls.create(steps)

    def batches(self) -> list[ExecutionBatch]:
        return build_execution_batches(self.steps)

    def capability_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(step.capability_id for step in self.steps))


def build_execution_batches(steps: Iterable[ExecutionStep]) -> list[ExecutionBatch]:
    """Group steps into dependency-ordered batches.

    Raises ``CircularDependencyError`` as soon as one iteration makes no
    progress while steps remain, which covers cycles and references to ids
    that are not part of the plan.
    """

    remaining = sorted(steps, key=lambda step: (step.ordinal, step.step_id))
    known_ids = {step.step_id for step in remaining}
    scheduled: set[str] = set()
    batches: list[ExecutionBatch] = []

    while remaining:
        ready = tuple(step for step in remaining if step.depends_on <= scheduled)
        if not ready:
            dangling = {
                step.step_id: tuple(sorted(step.depends_on - known_ids))
                for step in remaining
                if step.depends_on - known_ids
            }
            unresolved = tuple(step.step_id for step in remaining)
            logger.error(
                "No steps ready to execute unresolved=%s dangling=%s",
                ",".join(unresolved),
                dangling or "-",
            )
            raise CircularDependencyError(unresolved=unresolved, dangling=dangling)

        batches.append(ExecutionBatch(batch_number=len(batches) + 1, steps=ready))
        scheduled.update(step.step_id for step in ready)
        remaining = [step for step in remaining if step.step_id not in scheduled]

    return batches


@dataclass(slots=True)
class StepInput:
    """What one plan step hands to its capability."""

    step: ExecutionStep
    upstream: dict[str, CapabilityResult] = field(default_factory=dict)


@dataclass(slots=True)
class StepOutcome:
    """Per-step execution record."""

    step_id: str
    ordinal: int
    capability_id: str
    status: StepStatus
    batch_number: int | None = None
    result: CapabilityResult | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    usage: UsageCounters | None = None

    @property
    def success(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def attempted(self) -> bool:
        return self.status in {StepStatus.COMPLETED, StepStatus.FAILED}

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage is not None else 0


@dataclass(slots=True)
class ExecutionResult:
    """Aggregated plan outcome with per-step records in ordinal order."""

    success: bool
    output: str
    structured: dict[str, Any]
    summary: str
    outcomes: list[StepOutcome]
    batch_count: int
    total_duration_ms: int
    total_tokens: int
    halted_by_critical: bool = False

    def to_capability_result(self) -> CapabilityResult:
        """Fold the plan outcome into one result for the quality gate."""

        attempted = [outcome for outcome in self.outcomes if outcome.result is not None]
        citations: list[Citation] = []
        seen_documents: set[tuple[str, str]] = set()
        usage = UsageCounters()
        confidence = ResultConfidence.HIGH
        sub_task_outcome: StepOutcome | None = None
        for outcome in attempted:
            result = outcome.result
            if result is None:
                continue
            for citation in result.citations:
                key = (citation.document_id, citation.content)
                if key not in seen_documents:
                    seen_documents.add(key)
                    citations.append(citation)
            if result.usage is not None:
                usage = usage + result.usage
            if _CONFIDENCE_RANK[result.confidence] < _CONFIDENCE_RANK[confidence]:
                confidence = result.confidence
            if sub_task_outcome is None and result.needs_subtask:
                sub_task_outcome = outcome
        if not attempted:
            confidence = ResultConfidence.LOW

        structured = dict(self.structured)
        structured["summary"] = self.summary
        return CapabilityResult(
            success=self.success,
            output=self.output,
            structured=structured,
            citations=citations,
            confidence=confidence,
            next_action=NextAction.NEEDS_SUBTASK if sub_task_outcome else NextAction.DONE,
            sub_task_request=(
                sub_task_outcome.result.sub_task_request
                if sub_task_outcome is not None and sub_task_outcome.result is not None
                else None
            ),
            usage=usage,
        )


class ParallelExecutor:
    """Runs an ``ExecutionPlan`` batch by batch against registered capabilities."""

    def __init__(self, registry: CapabilityRegistry, *, step_timeout_seconds: float) -> None:
        self.registry = registry
        self.step_timeout_seconds = step_timeout_seconds

    async def execute(self, plan: ExecutionPlan, job: JobView) -> ExecutionResult:
        """Execute all batches; only plan-shape errors escape."""

        started = time.monotonic()
        batches = plan.batches()
        logger.info(
            "Execution batches created job_id=%s batches=%d sizes=%s",
            job.job_id,
            len(batches),
            [len(batch.steps) for batch in batches],
        )

        outcomes: dict[str, StepOutcome] = {}
        halted_by_critical = False
        executed_batches = 0
        for batch in batches:
            executed_batches += 1
            logger.info(
                "Executing batch %d/%d job_id=%s steps=%s",
                batch.batch_number,
                len(batches),
                job.job_id,
                ",".join(batch.step_ids),
            )
            results = await asyncio.gather(
                *(
                    self._run_step(step, job=job, batch=batch, outcomes=outcomes)
                    for step in batch.steps
                ),
                return_exceptions=True,
            )
            for step, item in zip(batch.steps, results, strict=True):
                if isinstance(item, BaseException):
                    item = _failed_outcome(step, batch=batch, error=item)
                outcomes[step.step_id] = item

            failed = [
                step_id for step_id in batch.step_ids if not outcomes[step_id].success
            ]
            logger.info(
                "Batch %d/%d completed job_id=%s successful=%d failed=%d",
                batch.batch_number,
                len(batches),
                job.job_id,
                len(batch.steps) - len(failed),
                len(failed),
            )
            if any(step.critical and not outcomes[step.step_id].success for step in batch.steps):
                logger.warning(
                    "Critical step failed, stopping execution job_id=%s batch=%d",
                    job.job_id,
                    batch.batch_number,
                )
                halted_by_critical = True
                break

        ordered = [
            outcomes.get(step.step_id)
            or StepOutcome(
                step_id=step.step_id,
                ordinal=step.ordinal,
                capability_id=step.capability_id,
                status=StepStatus.SKIPPED,
            )
            for step in plan.steps
        ]
        return _compose_result(
            ordered,
            batch_count=executed_batches,
            total_duration_ms=int((time.monotonic() - started) * 1000),
            halted_by_critical=halted_by_critical,
        )

    async def _run_step(
        self,
        step: ExecutionStep,
        *,
        job: JobView,
        batch: ExecutionBatch,
        outcomes: Mapping[str, StepOutcome],
    ) -> StepOutcome:
        started_at = utc_now()
        started = time.monotonic()
        upstream = {
            dep_id: outcomes[dep_id].result
            for dep_id in sorted(step.depends_on)
            if dep_id in outcomes and outcomes[dep_id].result is not None
        }
        logger.info(
            "Executing step job_id=%s step=%s capability=%s",
            job.job_id,
            step.step_id,
            step.capability_id,
        )
        try:
            capability = self.registry.get(step.capability_id)
            try:
                result = await asyncio.wait_for(
                    capability.execute(job, StepInput(step=step, upstream=upstream)),
                    timeout=self.step_timeout_seconds,
                )
            except TimeoutError as error:
                raise StageTimeoutError(
                    f"step:{step.step_id}",
                    self.step_timeout_seconds,
                ) from error
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Step execution raised job_id=%s step=%s error=%s",
                job.job_id,
                step.step_id,
                error,
            )
            outcome = _failed_outcome(step, batch=batch, error=error)
            outcome.started_at = started_at
            outcome.completed_at = utc_now()
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            return outcome

        return StepOutcome(
            step_id=step.step_id,
            ordinal=step.ordinal,
            capability_id=step.capability_id,
            status=StepStatus.COMPLETED if result.success else StepStatus.FAILED,
            batch_number=batch.batch_number,
            result=result,
            error=None if result.success else "capability reported failure",
            started_at=started_at,
            completed_at=utc_now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            usage=result.usage,
        )


def _failed_outcome(
    step: ExecutionStep,
    *,
    batch: ExecutionBatch,
    error: BaseException,
) -> StepOutcome:
    return StepOutcome(
        step_id=step.step_id,
        ordinal=step.ordinal,
        capability_id=step.capability_id,
        status=StepStatus.FAILED,
        batch_number=batch.batch_number,
        error=str(error) or type(error).__name__,
    )


def _compose_result(
    outcomes: list[StepOutcome],
    *,
    batch_count: int,
    total_duration_ms: int,
    halted_by_critical: bool,
) -> ExecutionResult:
    attempted = [outcome for outcome in outcomes if outcome.attempted]
    completed = [outcome for outcome in attempted if outcome.success]

    output_blocks = []
    structured: dict[str, Any] = {}
    for outcome in outcomes:
        if outcome.result is None:
            continue
        if outcome.success:
            first_line = outcome.result.output.strip().splitlines()
            output_blocks.append(
                f"**{outcome.capability_id}**: {first_line[0] if first_line else 'Completed'}",
            )
        structured[f"step_{outcome.ordinal}"] = (
            outcome.result.structured
            if outcome.result.structured is not None
            else {"output": outcome.result.output}
        )

    failed_count = len(attempted) - len(completed)
    noun = "batch" if batch_count == 1 else "batches"
    summary = (
        f"Execution completed in {batch_count} parallel {noun}: "
        f"{len(completed)}/{len(outcomes)} steps successful"
    )
    if failed_count:
        summary += f", {failed_count} failed"

    return ExecutionResult(
        success=bool(attempted) and len(completed) == len(attempted),
        output="\n\n".join(output_blocks),
        structured=structured,
        summary=summary,
        outcomes=outcomes,
        batch_count=batch_count,
        total_duration_ms=total_duration_ms,
        total_tokens=sum(outcome.total_tokens for outcome in outcomes),
        halted_by_critical=halted_by_critical,
    )
