"""SQLModel ORM tables for orchestration and oversight storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Outcome(SQLModel, table=True):
    __tablename__ = "outcomes"  # type: ignore[bad-override]

    outcome_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    brief: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(index=True)
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    infrastructure_ready: bool = Field(default=False)
    auto_resolve_mode: str = Field(default="manual")
    auto_resolve_threshold: float = Field(default=0.8)
    completion_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "outcome_id", "phase", "status", "priority", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    phase: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=0, index=True)
    required_capabilities_json: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    worker_id: str | None = Field(default=None, index=True)
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    from_review: bool = Field(default=False)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Worker(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_workers_task_running",
            "task_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    worker_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    phase: str
    status: str = Field(index=True)
    cost: float = Field(default=0.0)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Observation(SQLModel, table=True):
    __tablename__ = "observations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_observations_outcome_time", "outcome_id", "created_at"),)

    observation_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    evidence_json: str | None = Field(default=None, sa_column=Column(Text))
    escalation_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("escalations.escalation_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Escalation(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_escalations_outcome_status_time", "outcome_id", "status", "created_at"),
    )

    escalation_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    status: str = Field(index=True)
    severity: str = Field(index=True)
    trigger_type: str = Field(index=True)
    trigger_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    trigger_evidence_json: str | None = Field(default=None, sa_column=Column(Text))
    question_text: str = Field(sa_column=Column(Text, nullable=False))
    question_context: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    question_options_json: str | None = Field(default=None, sa_column=Column(Text))
    answer_option: str | None = None
    answer_context: str | None = Field(default=None, sa_column=Column(Text))
    answered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    answered_by: str | None = None
    answer_confidence: float | None = None
    dismiss_reason: str | None = Field(default=None, sa_column=Column(Text))
    dismissed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    hold_active: bool = Field(default=False)
    incorporated_into_outcome_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EscalationTaskBlock(SQLModel, table=True):
    __tablename__ = "escalation_task_blocks"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("escalation_id", "task_id", name="pk_escalation_task_blocks"),
        Index("idx_escalation_task_blocks_task", "task_id"),
    )

    escalation_id: str = Field(
        sa_column=Column(
            ForeignKey("escalations.escalation_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )


class ReviewCycle(SQLModel, table=True):
    __tablename__ = "review_cycles"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("outcome_id", "cycle_number", name="uq_review_cycles_outcome_cycle"),
    )

    review_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    cycle_number: int
    issues_found: int = Field(default=0)
    tasks_created: int = Field(default=0)
    converged: bool = Field(default=False)
    unevaluated_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
