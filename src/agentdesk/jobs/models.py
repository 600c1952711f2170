"""Domain models for the job lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED = "blocked"
    NEEDS_HUMAN_REVIEW = "needs_human_review"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {JobStatus.DONE, JobStatus.FAILED, JobStatus.NEEDS_HUMAN_REVIEW},
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.BLOCKED,
            JobStatus.NEEDS_HUMAN_REVIEW,
            JobStatus.DONE,
            JobStatus.FAILED,
        },
    ),
    JobStatus.BLOCKED: frozenset({JobStatus.RUNNING}),
    JobStatus.NEEDS_HUMAN_REVIEW: frozenset(),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_allowed_transition(status_from: JobStatus, status_to: JobStatus) -> bool:
    """Return True when the lifecycle graph permits the transition."""

    return status_to in ALLOWED_TRANSITIONS[status_from]


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    CLASSIFICATION_UNAVAILABLE = "classification_unavailable"
    KNOWLEDGE_NOT_READY = "knowledge_not_ready"
    KNOWLEDGE_UNAVAILABLE = "knowledge_unavailable"
    CAPABILITY_NOT_FOUND = "capability_not_found"
    CAPABILITY_ERROR = "capability_error"
    STAGE_TIMEOUT = "stage_timeout"
    QUALITY_REJECTED = "quality_rejected"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    CANCELED = "canceled"
    UNEXPECTED_ERROR = "unexpected_error"


class NextAction(str, Enum):
    """What a capability asks the orchestrator to do with its result."""

    DONE = "done"
    NEEDS_REVIEW = "needs_review"
    NEEDS_SUBTASK = "needs_subtask"


class ResultConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True)
class Intent:
    """Classified intent of a raw request."""

    primary: str
    confidence: float
    entities: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "primary": self.primary,
            "confidence": self.confidence,
            "entities": dict(self.entities),
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> Intent:
        return cls(
            primary=str(raw["primary"]),
            confidence=float(raw.get("confidence", 0.0)),
            entities={str(k): str(v) for k, v in (raw.get("entities") or {}).items()},
        )


@dataclass(slots=True)
class KnowledgeDocument:
    document_id: str
    title: str
    source: str = ""


@dataclass(slots=True)
class KnowledgeChunk:
    document_id: str
    content: str
    source: str = ""
    relevance: float = 0.0


@dataclass(slots=True)
class KnowledgePack:
    """Retrieval bundle that must be ready before any capability runs."""

    ready: bool
    documents: list[KnowledgeDocument] = field(default_factory=list)
    chunks: list[KnowledgeChunk] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    query: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "query": self.query,
            "documents": [
                {"document_id": doc.document_id, "title": doc.title, "source": doc.source}
                for doc in self.documents
            ],
            "chunks": [
                {
                    "document_id": chunk.document_id,
                    "content": chunk.content,
                    "source": chunk.source,
                    "relevance": chunk.relevance,
                }
                for chunk in self.chunks
            ],
            "missing": list(self.missing),
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> KnowledgePack:
        return cls(
            ready=bool(raw.get("ready", False)),
            query=str(raw.get("query", "")),
            documents=[
                KnowledgeDocument(
                    document_id=str(item["document_id"]),
                    title=str(item.get("title", "")),
                    source=str(item.get("source", "")),
                )
                for item in raw.get("documents") or []
            ],
            chunks=[
                KnowledgeChunk(
                    document_id=str(item["document_id"]),
                    content=str(item.get("content", "")),
                    source=str(item.get("source", "")),
                    relevance=float(item.get("relevance", 0.0)),
                )
                for item in raw.get("chunks") or []
            ],
            missing=[str(item) for item in raw.get("missing") or []],
        )


@dataclass(slots=True)
class Citation:
    source: str
    content: str
    document_id: str


@dataclass(slots=True)
class SubTaskRequest:
    """Marker payload asking the orchestrator to spawn a child job."""

    target_capability: str
    task: str
    context: dict[str, Any] = field(default_factory=dict)
    blocking: bool = True


@dataclass(slots=True)
class UsageCounters:
    """Token usage reported by a capability call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: UsageCounters) -> UsageCounters:
        return UsageCounters(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(slots=True)
class CapabilityResult:
    """Structured result returned by a capability."""

    success: bool
    output: str
    structured: dict[str, Any] | None = None
    citations: list[Citation] = field(default_factory=list)
    confidence: ResultConfidence = ResultConfidence.MEDIUM
    next_action: NextAction = NextAction.DONE
    sub_task_request: SubTaskRequest | None = None
    usage: UsageCounters | None = None

    @property
    def needs_subtask(self) -> bool:
        return self.next_action == NextAction.NEEDS_SUBTASK and self.sub_task_request is not None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "structured": self.structured,
            "citations": [
                {"source": c.source, "content": c.content, "document_id": c.document_id}
                for c in self.citations
            ],
            "confidence": self.confidence.value,
            "next_action": self.next_action.value,
            "sub_task_request": None,
            "usage": None,
        }
        if self.sub_task_request is not None:
            payload["sub_task_request"] = {
                "target_capability": self.sub_task_request.target_capability,
                "task": self.sub_task_request.task,
                "context": self.sub_task_request.context,
                "blocking": self.sub_task_request.blocking,
            }
        if self.usage is not None:
            payload["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        return payload

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> CapabilityResult:
        sub_task_raw = raw.get("sub_task_request")
        usage_raw = raw.get("usage")
        return cls(
            success=bool(raw.get("success", False)),
            output=str(raw.get("output", "")),
            structured=raw.get("structured"),
            citations=[
                Citation(
                    source=str(item.get("source", "")),
                    content=str(item.get("content", "")),
                    document_id=str(item.get("document_id", "")),
                )
                for item in raw.get("citations") or []
            ],
            confidence=ResultConfidence(raw.get("confidence", ResultConfidence.MEDIUM.value)),
            next_action=NextAction(raw.get("next_action", NextAction.DONE.value)),
            sub_task_request=(
                SubTaskRequest(
                    target_capability=str(sub_task_raw["target_capability"]),
                    task=str(sub_task_raw["task"]),
                    context=dict(sub_task_raw.get("context") or {}),
                    blocking=bool(sub_task_raw.get("blocking", True)),
                )
                if isinstance(sub_task_raw, dict)
                else None
            ),
            usage=(
                UsageCounters(
                    prompt_tokens=int(usage_raw.get("prompt_tokens", 0)),
                    completion_tokens=int(usage_raw.get("completion_tokens", 0)),
                    total_tokens=int(usage_raw.get("total_tokens", 0)),
                )
                if isinstance(usage_raw, dict)
                else None
            ),
        )


@dataclass(slots=True)
class ValidationCheck:
    name: str
    passed: bool
    score: float
    details: str | None = None


@dataclass(slots=True)
class ValidationOutcome:
    """Quality gate verdict persisted on the job."""

    passed: bool
    overall_score: float
    checks: list[ValidationCheck] = field(default_factory=list)
    feedback: str | None = None
    lenient: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "overall_score": self.overall_score,
            "checks": [
                {
                    "name": check.name,
                    "passed": check.passed,
                    "score": check.score,
                    "details": check.details,
                }
                for check in self.checks
            ],
            "feedback": self.feedback,
            "lenient": self.lenient,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> ValidationOutcome:
        return cls(
            passed=bool(raw.get("passed", False)),
            overall_score=float(raw.get("overall_score", 0.0)),
            checks=[
                ValidationCheck(
                    name=str(item["name"]),
                    passed=bool(item.get("passed", False)),
                    score=float(item.get("score", 0.0)),
                    details=item.get("details"),
                )
                for item in raw.get("checks") or []
            ],
            feedback=raw.get("feedback"),
            lenient=bool(raw.get("lenient", False)),
        )


@dataclass(slots=True)
class MemoryEntry:
    """One entry of the job's ordered memory log."""

    role: str
    content: str
    created_at: datetime
    capability_id: str | None = None


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    raw_input: str
    user_id: str
    client_id: str | None = None
    parent_job_id: str | None = None
    requested_capability: str | None = None
    max_retries: int = 3
    job_id: str | None = None
    initial_memory: list[MemoryEntry] = field(default_factory=list)


@dataclass(slots=True)
class JobView:
    """Readable job view for orchestrator, worker and CLI logic."""

    job_id: str
    user_id: str
    client_id: str | None
    status: JobStatus
    raw_input: str
    intent: Intent | None
    knowledge_pack: KnowledgePack | None
    assigned_capability: str | None
    requested_capability: str | None
    parent_job_id: str | None
    retry_count: int
    max_retries: int
    result: CapabilityResult | None
    validation: ValidationOutcome | None
    memory: list[MemoryEntry]
    failure_class: FailureClass | None
    error_summary: str | None
    worker_id: str | None
    cancel_requested_at: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream and direct children."""

    job: JobView
    events: list[JobEventView]
    children: list[JobView] = field(default_factory=list)


class PendingActionType(str, Enum):
    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    CREATE_EVENT = "create_event"


class PendingActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    REJECTED = "rejected"


@dataclass(slots=True)
class PendingActionCreate:
    job_id: str
    user_id: str
    action_type: PendingActionType
    preview: dict[str, Any]
    parameters: dict[str, Any]


@dataclass(slots=True)
class PendingActionView:
    """Side-effecting operation held for approval."""

    action_id: str
    job_id: str
    user_id: str
    action_type: PendingActionType
    status: PendingActionStatus
    preview: dict[str, Any]
    parameters: dict[str, Any]
    result_message: str | None
    created_at: datetime
    updated_at: datetime
    approved_at: datetime | None
    executed_at: datetime | None
