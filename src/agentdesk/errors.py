"""Exception hierarchy for orchestration failures.

Each error that ends an attempt carries the ``FailureClass`` recorded on the job
and whether the orchestrator may retry it.
"""

from __future__ import annotations

from agentdesk.jobs.models import FailureClass


class OrchestratorError(Exception):
    """Base class for classified orchestration failures."""

    failure_class: FailureClass = FailureClass.UNEXPECTED_ERROR
    retryable: bool = False


class JobNotFoundError(OrchestratorError, LookupError):
    """Referenced job does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(OrchestratorError):
    """Requested transition is not allowed from the job's current status."""


class ClassificationUnavailableError(OrchestratorError):
    """Intent classifier infrastructure failed."""

    failure_class = FailureClass.CLASSIFICATION_UNAVAILABLE
    retryable = True


class KnowledgeNotReadyError(OrchestratorError):
    """Retriever returned a pack with ``ready=False``."""

    failure_class = FailureClass.KNOWLEDGE_NOT_READY
    retryable = True

    def __init__(self, job_id: str, missing: tuple[str, ...] = ()) -> None:
        detail = f" (missing: {', '.join(missing)})" if missing else ""
        super().__init__(f"Knowledge pack not ready for job {job_id}{detail}")
        self.job_id = job_id
        self.missing = missing


class KnowledgeUnavailableError(OrchestratorError):
    """Retriever infrastructure failed."""

    failure_class = FailureClass.KNOWLEDGE_UNAVAILABLE
    retryable = True


class CapabilityNotFoundError(OrchestratorError, LookupError):
    """Routing produced a capability id that is not registered."""

    failure_class = FailureClass.CAPABILITY_NOT_FOUND

    def __init__(self, capability_id: str) -> None:
        super().__init__(f"Capability not found: {capability_id}")
        self.capability_id = capability_id


class CapabilityExecutionError(OrchestratorError):
    """Capability raised or reported an unsuccessful result."""

    failure_class = FailureClass.CAPABILITY_ERROR
    retryable = True


class StageTimeoutError(OrchestratorError, TimeoutError):
    """An external call exceeded its caller-imposed timeout."""

    failure_class = FailureClass.STAGE_TIMEOUT
    retryable = True

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        super().__init__(f"Stage {stage!r} timed out after {timeout_seconds:.1f}s")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class CircularDependencyError(OrchestratorError):
    """Execution plan contains a dependency cycle or a dangling reference."""

    failure_class = FailureClass.CIRCULAR_DEPENDENCY

    def __init__(
        self,
        *,
        unresolved: tuple[str, ...],
        dangling: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        dangling = dangling or {}
        parts = [f"unresolved steps: {', '.join(unresolved)}"]
        if dangling:
            refs = "; ".join(
                f"{step_id} -> {', '.join(missing)}"
                for step_id, missing in sorted(dangling.items())
            )
            parts.append(f"dangling references: {refs}")
        super().__init__("Circular dependency in execution plan (" + "; ".join(parts) + ")")
        self.unresolved = unresolved
        self.dangling = dangling


class JobCanceledError(OrchestratorError):
    """Cancellation was requested for the job."""

    failure_class = FailureClass.CANCELED

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was canceled")
        self.job_id = job_id


class ActionNotFoundError(OrchestratorError, LookupError):
    """Referenced pending action does not exist."""

    def __init__(self, action_id: str) -> None:
        super().__init__(f"Pending action not found: {action_id}")
        self.action_id = action_id


class ActionStateError(OrchestratorError):
    """Pending action cannot move to the requested status."""
