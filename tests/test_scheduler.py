from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import allure
import pytest

from agentdesk.capabilities.registry import CapabilityRegistry
from agentdesk.errors import CircularDependencyError
from agentdesk.jobs.models import (
    CapabilityResult,
    Intent,
    JobStatus,
    JobView,
    ResultConfidence,
    UsageCounters,
)
from agentdesk.routing import PlannedStep
from agentdesk.scheduler import (
    ExecutionPlan,
    ExecutionStep,
    ParallelExecutor,
    StepInput,
    StepStatus,
    build_execution_batches,
)

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Dependency Scheduler"),
]


class _RecordingCapability:
    def __init__(
        self,
        capability_id: str,
        calls: list[str],
        *,
        succeed: bool = True,
        raise_error: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.capability_id = capability_id
        self.calls = calls
        self.succeed = succeed
        self.raise_error = raise_error
        self.delay = delay
        self.inputs: list[StepInput | None] = []

    def can_handle(self, intent: Intent) -> bool:
        return True

    async def execute(self, job: JobView, step_input: StepInput | None = None) -> CapabilityResult:
        self.inputs.append(step_input)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls.append(self.capability_id)
        if self.raise_error:
            raise RuntimeError(f"{self.capability_id} exploded")
        return CapabilityResult(
            success=self.succeed,
            output=f"{self.capability_id} output\nsecond line",
            confidence=ResultConfidence.HIGH,
            usage=UsageCounters(prompt_tokens=1, completion_tokens=2, total_tokens=3),
        )


def _job() -> JobView:
    now = datetime(2026, 10, 16, 12, 0, tzinfo=UTC)
    return JobView(
        job_id="job-1",
        user_id="u-1",
        client_id=None,
        status=JobStatus.RUNNING,
        raw_input="prepare a proposal",
        intent=None,
        knowledge_pack=None,
        assigned_capability=None,
        requested_capability=None,
        parent_job_id=None,
        retry_count=0,
        max_retries=3,
        result=None,
        validation=None,
        memory=[],
        failure_class=None,
        error_summary=None,
        worker_id="w-1",
        cancel_requested_at=None,
        created_at=now,
        updated_at=now,
        started_at=now,
        completed_at=None,
    )


def _step(
    step_id: str,
    ordinal: int,
    *depends_on: str,
    critical: bool = False,
) -> ExecutionStep:
    return ExecutionStep(
        step_id=step_id,
        ordinal=ordinal,
        capability_id=f"cap/{step_id}",
        depends_on=frozenset(depends_on),
        critical=critical,
    )


def _executor(
    calls: list[str],
    *step_ids: str,
    **overrides: _RecordingCapability,
) -> ParallelExecutor:
    registry = CapabilityRegistry()
    for step_id in step_ids:
        registry.register(overrides.get(step_id) or _RecordingCapability(f"cap/{step_id}", calls))
    return ParallelExecutor(registry, step_timeout_seconds=2.0)


def test_batches_follow_dependency_levels() -> None:
    steps = [
        _step("1", 1),
        _step("2", 2),
        _step("3", 3),
        _step("4", 4, "1", "2"),
        _step("5", 5, "3"),
        _step("6", 6, "4", "5"),
    ]

    batches = build_execution_batches(steps)

    assert [batch.step_ids for batch in batches] == [("1", "2", "3"), ("4", "5"), ("6",)]
    assert [batch.batch_number for batch in batches] == [1, 2, 3]


def test_cycle_is_rejected_before_any_step_runs() -> None:
    calls: list[str] = []
    plan = ExecutionPlan.create([_step("a", 1, "b"), _step("b", 2, "a")])

    with pytest.raises(CircularDependencyError) as excinfo:
        asyncio.run(_executor(calls, "a", "b").execute(plan, _job()))

    assert calls == []
    assert set(excinfo.value.unresolved) == {"a", "b"}
    assert excinfo.value.dangling == {}


def test_dangling_reference_is_reported_as_circular_dependency() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        build_execution_batches([_step("a", 1), _step("b", 2, "ghost")])

    assert excinfo.value.unresolved == ("b",)
    assert excinfo.value.dangling == {"b": ("ghost",)}
    assert "ghost" in str(excinfo.value)


def test_self_dependency_is_rejected_when_plan_is_created() -> None:
    with pytest.raises(CircularDependencyError):
        ExecutionPlan.create([_step("a", 1, "a")])


def test_duplicate_step_ids_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate execution step id"):
        ExecutionPlan.create([_step("a", 1), _step("a", 2)])


def test_outcomes_are_reported_in_ordinal_order_regardless_of_completion_order() -> None:
    calls: list[str] = []
    slow = _RecordingCapability("cap/1", calls, delay=0.05)
    plan = ExecutionPlan.create([_step("1", 1), _step("2", 2), _step("3", 3, "1", "2")])

    result = asyncio.run(_executor(calls, "1", "2", "3", **{"1": slow}).execute(plan, _job()))

    assert calls == ["cap/2", "cap/1", "cap/3"]
    assert [outcome.step_id for outcome in result.outcomes] == ["1", "2", "3"]
    assert [outcome.batch_number for outcome in result.outcomes] == [1, 1, 2]
    assert result.success is True
    assert result.batch_count == 2
    assert result.total_tokens == 9
    assert result.summary == "Execution completed in 2 parallel batches: 3/3 steps successful"
    assert result.output.split("\n\n") == [
        "**cap/1**: cap/1 output",
        "**cap/2**: cap/2 output",
        "**cap/3**: cap/3 output",
    ]
    assert set(result.structured) == {"step_1", "step_2", "step_3"}


def test_dependent_step_receives_upstream_results() -> None:
    calls: list[str] = []
    downstream = _RecordingCapability("cap/c", calls)
    plan = ExecutionPlan.create([_step("a", 1), _step("b", 2), _step("c", 3, "a", "b")])

    asyncio.run(_executor(calls, "a", "b", "c", c=downstream).execute(plan, _job()))

    step_input = downstream.inputs[0]
    assert step_input is not None
    assert sorted(step_input.upstream) == ["a", "b"]
    assert step_input.upstream["a"].output.startswith("cap/a output")


def test_failed_sibling_does_not_cancel_the_batch() -> None:
    calls: list[str] = []
    broken = _RecordingCapability("cap/a", calls, raise_error=True)
    plan = ExecutionPlan.create([_step("a", 1), _step("b", 2), _step("c", 3, "b")])

    result = asyncio.run(_executor(calls, "a", "b", "c", a=broken).execute(plan, _job()))

    statuses = {outcome.step_id: outcome.status for outcome in result.outcomes}
    assert statuses == {
        "a": StepStatus.FAILED,
        "b": StepStatus.COMPLETED,
        "c": StepStatus.COMPLETED,
    }
    assert result.success is False
    assert result.summary.endswith("2/3 steps successful, 1 failed")
    assert "cap/a exploded" in (result.outcomes[0].error or "")


def test_critical_failure_stops_after_current_batch() -> None:
    calls: list[str] = []
    critical = _RecordingCapability("cap/a", calls, succeed=False)
    plan = ExecutionPlan.create(
        [
            _step("a", 1, critical=True),
            _step("b", 2),
            _step("c", 3, "a"),
            _step("d", 4, "b"),
        ],
    )

    result = asyncio.run(_executor(calls, "a", "b", "c", "d", a=critical).execute(plan, _job()))

    assert sorted(calls) == ["cap/a", "cap/b"]
    assert result.halted_by_critical is True
    assert result.batch_count == 1
    statuses = [outcome.status for outcome in result.outcomes]
    assert statuses == [
        StepStatus.FAILED,
        StepStatus.COMPLETED,
        StepStatus.SKIPPED,
        StepStatus.SKIPPED,
    ]
    assert result.success is False


def test_non_critical_failure_keeps_running_dependents() -> None:
    calls: list[str] = []
    failing = _RecordingCapability("cap/a", calls, succeed=False)
    plan = ExecutionPlan.create([_step("a", 1), _step("b", 2, "a")])

    result = asyncio.run(_executor(calls, "a", "b", a=failing).execute(plan, _job()))

    assert calls == ["cap/a", "cap/b"]
    assert result.halted_by_critical is False


def test_step_timeout_marks_only_that_step_failed() -> None:
    calls: list[str] = []
    registry = CapabilityRegistry(
        [
            _RecordingCapability("cap/slow", calls, delay=1.0),
            _RecordingCapability("cap/fast", calls),
        ],
    )
    executor = ParallelExecutor(registry, step_timeout_seconds=0.05)
    plan = ExecutionPlan.create(
        [
            ExecutionStep(step_id="slow", ordinal=1, capability_id="cap/slow"),
            ExecutionStep(step_id="fast", ordinal=2, capability_id="cap/fast"),
        ],
    )

    result = asyncio.run(executor.execute(plan, _job()))

    assert [outcome.status for outcome in result.outcomes] == [
        StepStatus.FAILED,
        StepStatus.COMPLETED,
    ]
    assert "timed out" in (result.outcomes[0].error or "")


def test_to_capability_result_folds_usage_and_lowest_confidence() -> None:
    calls: list[str] = []
    plan = ExecutionPlan.from_planned_steps(
        (
            PlannedStep(step_id="research", capability_id="cap/research"),
            PlannedStep(
                step_id="proposal",
                capability_id="cap/proposal",
                depends_on=("research",),
                critical=True,
            ),
        ),
        base_payload={"raw_input": "prepare a proposal"},
    )

    result = asyncio.run(_executor(calls, "research", "proposal").execute(plan, _job()))
    folded = result.to_capability_result()

    assert [step.ordinal for step in plan.steps] == [1, 2]
    assert plan.steps[0].payload["raw_input"] == "prepare a proposal"
    assert folded.success is True
    assert folded.confidence == ResultConfidence.HIGH
    assert folded.usage == UsageCounters(prompt_tokens=2, completion_tokens=4, total_tokens=6)
    assert folded.structured is not None
    assert folded.structured["summary"].startswith("Execution completed in 2 parallel batches")
