"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agentdesk.errors import JobNotFoundError, JobStateError
from agentdesk.jobs.models import (
    TERMINAL_STATUSES,
    CapabilityResult,
    FailureClass,
    Intent,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    KnowledgePack,
    MemoryEntry,
    PendingActionCreate,
    PendingActionStatus,
    PendingActionType,
    PendingActionView,
    ValidationOutcome,
    is_allowed_transition,
)
from agentdesk.storage.alembic_runner import current_revision, upgrade_head
from agentdesk.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agentdesk.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    JobEventRow,
    JobRow,
    PendingActionRow,
)


class JobRepository:
    """Job persistence facade.

    Every status change is a conditional ``UPDATE ... WHERE status = <expected>``
    whose ``rowcount`` decides the winner, so several worker processes can share
    one database file without double-processing a job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = JobRow(
                job_id=job_id,
                user_id=payload.user_id,
                client_id=payload.client_id,
                status=JobStatus.QUEUED.value,
                raw_input=payload.raw_input,
                requested_capability=payload.requested_capability,
                parent_job_id=payload.parent_job_id,
                retry_count=0,
                max_retries=payload.max_retries,
                memory_json=_dump_json(
                    [_memory_to_payload(entry) for entry in payload.initial_memory],
                ),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "parent_job_id": payload.parent_job_id,
                    "requested_capability": payload.requested_capability,
                    "max_retries": payload.max_retries,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the oldest queued job.

        Queued jobs with a pending cancel request are claimed and failed on the
        spot, then the search continues.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(JobRow.status == JobStatus.QUEUED.value)
                    .order_by(col(JobRow.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                if not self._claim_row(
                    session=session,
                    job_id=candidate.job_id,
                    worker_id=worker_id,
                    now=now,
                ):
                    session.rollback()
                    continue

                if candidate.cancel_requested_at is not None:
                    self._fail_canceled_on_claim(session=session, job_id=candidate.job_id, now=now)
                    session.commit()
                    continue

                session.commit()
                claimed = session.exec(
                    select(JobRow).where(JobRow.job_id == candidate.job_id),
                ).one()
                return _to_job_view(claimed)

    def claim_job_by_id(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Claim one specific queued job.

        Returns ``None`` when another worker won, or when a cancel request was
        pending; such a job is failed as canceled on the spot.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            cancel_requested = row.cancel_requested_at is not None
            if not self._claim_row(session=session, job_id=job_id, worker_id=worker_id, now=now):
                session.rollback()
                return None
            if cancel_requested:
                self._fail_canceled_on_claim(session=session, job_id=job_id, now=now)
                session.commit()
                return None
            session.commit()
            claimed = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one()
            return _to_job_view(claimed)

    def get_job(self, job_id: str) -> JobView | None:
        """Return one job or ``None``."""

        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        """Return one job or raise ``JobNotFoundError``."""

        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(JobRow).order_by(col(JobRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_children(self, parent_job_id: str) -> list[JobView]:
        """Return direct sub-jobs in creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(JobRow.parent_job_id == parent_job_id)
                .order_by(col(JobRow.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream and children."""

        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()
            job = _to_job_view(row)

        events = [
            JobEventView(
                event_id=event_row.id or 0,
                job_id=event_row.job_id,
                event_type=event_row.event_type,
                status_from=(
                    JobStatus(event_row.status_from) if event_row.status_from is not None else None
                ),
                status_to=(
                    JobStatus(event_row.status_to) if event_row.status_to is not None else None
                ),
                created_at=to_utc_aware_datetime(event_row.created_at),
                details=_load_dict(event_row.details_json),
            )
            for event_row in event_rows
        ]
        return JobDetails(job=job, events=events, children=self.list_children(job_id))

    def update_intent(self, *, job_id: str, intent: Intent) -> bool:
        """Persist the classified intent of a running job."""

        return self._update_running(
            job_id=job_id,
            values={"intent_json": _dump_json(intent.to_payload())},
            event_type="intent_classified",
            details={"primary": intent.primary, "confidence": intent.confidence},
        )

    def update_knowledge_pack(self, *, job_id: str, pack: KnowledgePack) -> bool:
        """Persist the knowledge pack capabilities will read."""

        return self._update_running(
            job_id=job_id,
            values={"knowledge_pack_json": _dump_json(pack.to_payload())},
            event_type="knowledge_gathered",
            details={
                "ready": pack.ready,
                "documents": len(pack.documents),
                "missing": list(pack.missing),
            },
        )

    def assign_capability(self, *, job_id: str, capability_id: str) -> bool:
        return self._update_running(
            job_id=job_id,
            values={"assigned_capability": capability_id},
            event_type="capability_assigned",
            details={"capability": capability_id},
        )

    def update_result(self, *, job_id: str, result: CapabilityResult) -> bool:
        """Persist the candidate result; only a running job may receive one."""

        return self._update_running(
            job_id=job_id,
            values={"result_json": _dump_json(result.to_payload())},
            event_type="result_recorded",
            details={"success": result.success, "next_action": result.next_action.value},
        )

    def update_validation(self, *, job_id: str, validation: ValidationOutcome) -> bool:
        return self._update_running(
            job_id=job_id,
            values={"validation_json": _dump_json(validation.to_payload())},
            event_type="validated",
            details={
                "passed": validation.passed,
                "overall_score": validation.overall_score,
                "lenient": validation.lenient,
            },
        )

    def append_memory(self, *, job_id: str, entries: list[MemoryEntry]) -> None:
        """Append entries to the job's ordered memory log."""

        if not entries:
            return
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            memory = _load_list(row.memory_json)
            memory.extend(_memory_to_payload(entry) for entry in entries)
            row.memory_json = _dump_json(memory)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def increment_retry_count(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
    ) -> int | None:
        """Record one failed attempt; return the new retry count."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            new_count = row.retry_count + 1
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                    col(JobRow.retry_count) == row.retry_count,
                )
                .values(
                    retry_count=new_count,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="attempt_failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.RUNNING,
                details={
                    "retry_count": new_count,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                },
            )
            session.commit()
            return new_count

    def block_job(self, *, job_id: str, child_job_id: str) -> bool:
        """Park a running job until its sub-job is resolved."""

        return self._transition(
            job_id=job_id,
            status_from=JobStatus.RUNNING,
            status_to=JobStatus.BLOCKED,
            event_type="blocked",
            values={},
            details={"child_job_id": child_job_id},
        )

    def resume_job(self, *, job_id: str, worker_id: str) -> bool:
        """Move a blocked job back to running."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            status_from=JobStatus.BLOCKED,
            status_to=JobStatus.RUNNING,
            event_type="resumed",
            values={"worker_id": worker_id, "started_at": to_db_datetime(now)},
            details={"worker_id": worker_id},
        )

    def complete_job(self, *, job_id: str) -> bool:
        """Mark a running job as done."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            status_from=JobStatus.RUNNING,
            status_to=JobStatus.DONE,
            event_type="completed",
            values={
                "completed_at": to_db_datetime(now),
                "failure_class": None,
                "error_summary": None,
            },
            details={},
        )

    def fail_job(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
    ) -> bool:
        """Mark a running job as failed."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            status_from=JobStatus.RUNNING,
            status_to=JobStatus.FAILED,
            event_type="failed",
            values={
                "completed_at": to_db_datetime(now),
                "failure_class": failure_class.value,
                "error_summary": error_summary,
            },
            details={"failure_class": failure_class.value, "error_summary": error_summary},
        )

    def mark_needs_human_review(
        self,
        *,
        job_id: str,
        reason: str,
        failure_class: FailureClass | None = None,
    ) -> bool:
        """Hand a running job over to a human."""

        now = utc_now()
        values: dict[str, Any] = {
            "completed_at": to_db_datetime(now),
            "error_summary": reason,
        }
        if failure_class is not None:
            values["failure_class"] = failure_class.value
        return self._transition(
            job_id=job_id,
            status_from=JobStatus.RUNNING,
            status_to=JobStatus.NEEDS_HUMAN_REVIEW,
            event_type="needs_human_review",
            values=values,
            details={
                "reason": reason,
                "failure_class": failure_class.value if failure_class is not None else None,
            },
        )

    def request_cancel(self, *, job_id: str) -> JobView:
        """Flag a non-terminal job for cancellation."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            status = JobStatus(row.status)
            if status in TERMINAL_STATUSES:
                raise JobStateError(f"Job cannot be canceled from status={row.status}")
            if row.cancel_requested_at is None:
                row.cancel_requested_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                session.add(row)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="cancel_requested",
                    status_from=status,
                    status_to=status,
                    details={},
                )
                session.commit()
                session.refresh(row)
            return _to_job_view(row)

    def is_cancel_requested(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            return row.cancel_requested_at is not None

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append a free-form audit event without a status change."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def create_pending_action(self, payload: PendingActionCreate) -> PendingActionView:
        """Store a side-effecting action awaiting approval."""

        now = utc_now()
        action_id = str(uuid4())
        with Session(self.engine) as session:
            row = PendingActionRow(
                action_id=action_id,
                job_id=payload.job_id,
                user_id=payload.user_id,
                action_type=payload.action_type.value,
                status=PendingActionStatus.PENDING.value,
                preview_json=_dump_json(payload.preview),
                parameters_json=_dump_json(payload.parameters),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=payload.job_id,
                event_type="action_prepared",
                status_from=None,
                status_to=None,
                details={"action_id": action_id, "action_type": payload.action_type.value},
            )
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def get_pending_action(self, action_id: str) -> PendingActionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PendingActionRow).where(PendingActionRow.action_id == action_id),
            ).one_or_none()
            return _to_action_view(row) if row is not None else None

    def list_pending_actions(
        self,
        *,
        status: PendingActionStatus | None = None,
        job_id: str | None = None,
        limit: int = 50,
    ) -> list[PendingActionView]:
        """List actions newest first."""

        with Session(self.engine) as session:
            statement = (
                select(PendingActionRow)
                .order_by(col(PendingActionRow.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(PendingActionRow.status == status.value)
            if job_id is not None:
                statement = statement.where(PendingActionRow.job_id == job_id)
            rows = session.exec(statement).all()
        return [_to_action_view(row) for row in rows]

    def transition_pending_action(
        self,
        *,
        action_id: str,
        status_from: PendingActionStatus,
        status_to: PendingActionStatus,
        result_message: str | None = None,
    ) -> bool:
        """Guarded action status change; ``False`` when the status moved underneath."""

        now = utc_now()
        values: dict[str, Any] = {"status": status_to.value, "updated_at": to_db_datetime(now)}
        if result_message is not None:
            values["result_message"] = result_message
        if status_from == PendingActionStatus.PENDING:
            values["approved_at"] = to_db_datetime(now)
        if status_to == PendingActionStatus.EXECUTED:
            values["executed_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(
                    col(PendingActionRow.action_id) == action_id,
                    col(PendingActionRow.status) == status_from.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _claim_row(
        self,
        *,
        session: Session,
        job_id: str,
        worker_id: str,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(JobRow)
            .where(
                col(JobRow.job_id) == job_id,
                col(JobRow.status) == JobStatus.QUEUED.value,
            )
            .values(
                status=JobStatus.RUNNING.value,
                worker_id=worker_id,
                started_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="claimed",
            status_from=JobStatus.QUEUED,
            status_to=JobStatus.RUNNING,
            details={"worker_id": worker_id},
        )
        return True

    def _fail_canceled_on_claim(self, *, session: Session, job_id: str, now: datetime) -> None:
        session.exec(
            sa_update(JobRow)
            .where(
                col(JobRow.job_id) == job_id,
                col(JobRow.status) == JobStatus.RUNNING.value,
            )
            .values(
                status=JobStatus.FAILED.value,
                failure_class=FailureClass.CANCELED.value,
                error_summary="Canceled before processing started.",
                completed_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="failed",
            status_from=JobStatus.RUNNING,
            status_to=JobStatus.FAILED,
            details={"failure_class": FailureClass.CANCELED.value},
        )

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        status_from: JobStatus,
        status_to: JobStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
    ) -> bool:
        if not is_allowed_transition(status_from, status_to):
            raise JobStateError(
                f"Transition {status_from.value} -> {status_to.value} is not allowed",
            )

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == status_from.value,
                )
                .values(status=status_to.value, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _update_running(
        self,
        *,
        job_id: str,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()
            return True

    def _get_row(self, *, session: Session, job_id: str) -> JobRow:
        row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _dump_json(payload: object) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []


def _memory_to_payload(entry: MemoryEntry) -> dict[str, Any]:
    return {
        "role": entry.role,
        "content": entry.content,
        "capability_id": entry.capability_id,
        "created_at": to_utc_aware_datetime(entry.created_at).isoformat(),
    }


def _memory_from_payload(raw: dict[str, Any]) -> MemoryEntry:
    return MemoryEntry(
        role=str(raw.get("role", "system")),
        content=str(raw.get("content", "")),
        capability_id=raw.get("capability_id"),
        created_at=to_utc_aware_datetime(datetime.fromisoformat(raw["created_at"])),
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: JobRow) -> JobView:
    intent_raw = _load_dict(row.intent_json)
    pack_raw = _load_dict(row.knowledge_pack_json)
    result_raw = _load_dict(row.result_json)
    validation_raw = _load_dict(row.validation_json)
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        client_id=row.client_id,
        status=JobStatus(row.status),
        raw_input=row.raw_input,
        intent=Intent.from_payload(intent_raw) if intent_raw else None,
        knowledge_pack=KnowledgePack.from_payload(pack_raw) if pack_raw else None,
        assigned_capability=row.assigned_capability,
        requested_capability=row.requested_capability,
        parent_job_id=row.parent_job_id,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        result=CapabilityResult.from_payload(result_raw) if result_raw else None,
        validation=ValidationOutcome.from_payload(validation_raw) if validation_raw else None,
        memory=[
            _memory_from_payload(item)
            for item in _load_list(row.memory_json)
            if isinstance(item, dict)
        ],
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        worker_id=row.worker_id,
        cancel_requested_at=_optional_datetime(row.cancel_requested_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
    )


def _to_action_view(row: PendingActionRow) -> PendingActionView:
    return PendingActionView(
        action_id=row.action_id,
        job_id=row.job_id,
        user_id=row.user_id,
        action_type=PendingActionType(row.action_type),
        status=PendingActionStatus(row.status),
        preview=_load_dict(row.preview_json),
        parameters=_load_dict(row.parameters_json),
        result_message=row.result_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        approved_at=_optional_datetime(row.approved_at),
        executed_at=_optional_datetime(row.executed_at),
    )
