"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        Index("idx_jobs_parent", "parent_job_id"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    client_id: str | None = None
    status: str = Field(index=True)
    raw_input: str = Field(sa_column=Column(Text, nullable=False))
    intent_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    knowledge_pack_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    assigned_capability: str | None = None
    requested_capability: str | None = None
    parent_job_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("jobs.job_id", ondelete="SET NULL"), nullable=True),
    )
    retry_count: int = 0
    max_retries: int = 3
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    validation_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    memory_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    failure_class: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    worker_id: str | None = None
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PendingActionRow(SQLModel, table=True):
    __tablename__ = "pending_actions"  # type: ignore[bad-override]

    action_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    action_type: str
    status: str = Field(index=True)
    preview_json: str = Field(sa_column=Column(Text, nullable=False))
    parameters_json: str = Field(sa_column=Column(Text, nullable=False))
    result_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    approved_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    executed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
