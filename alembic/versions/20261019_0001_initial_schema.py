"""Initial orchestration and oversight schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "outcomes",
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("brief", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("infrastructure_ready", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("auto_resolve_mode", sa.String(), nullable=False, server_default="manual"),
        sa.Column("auto_resolve_threshold", sa.Float(), nullable=False, server_default="0.8"),
        sa.Column("completion_criteria_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["parent_id"], ["outcomes.outcome_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("outcome_id"),
    )
    op.create_index("ix_outcomes_name", "outcomes", ["name"])
    op.create_index("ix_outcomes_status", "outcomes", ["status"])
    op.create_index("ix_outcomes_parent_id", "outcomes", ["parent_id"])

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_capabilities_json", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("from_review", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_outcome_id", "tasks", ["outcome_id"])
    op.create_index("ix_tasks_phase", "tasks", ["phase"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_priority", "tasks", ["priority"])
    op.create_index("ix_tasks_worker_id", "tasks", ["worker_id"])
    op.create_index("ix_tasks_failure_class", "tasks", ["failure_class"])
    op.create_index(
        "idx_tasks_claim",
        "tasks",
        ["outcome_id", "phase", "status", "priority", "created_at"],
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])

    op.create_table(
        "workers",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_workers_outcome_id", "workers", ["outcome_id"])
    op.create_index("ix_workers_task_id", "workers", ["task_id"])
    op.create_index("ix_workers_status", "workers", ["status"])
    op.create_index(
        "uq_workers_task_running",
        "workers",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("trigger_task_id", sa.String(), nullable=True),
        sa.Column("trigger_evidence_json", sa.Text(), nullable=True),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("question_context", sa.Text(), nullable=False, server_default=""),
        sa.Column("question_options_json", sa.Text(), nullable=True),
        sa.Column("answer_option", sa.String(), nullable=True),
        sa.Column("answer_context", sa.Text(), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("answered_by", sa.String(), nullable=True),
        sa.Column("answer_confidence", sa.Float(), nullable=True),
        sa.Column("dismiss_reason", sa.Text(), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hold_active", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("incorporated_into_outcome_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["trigger_task_id"], ["tasks.task_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["incorporated_into_outcome_id"],
            ["outcomes.outcome_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index("ix_escalations_status", "escalations", ["status"])
    op.create_index("ix_escalations_severity", "escalations", ["severity"])
    op.create_index("ix_escalations_trigger_type", "escalations", ["trigger_type"])
    op.create_index("ix_escalations_trigger_task_id", "escalations", ["trigger_task_id"])
    op.create_index(
        "ix_escalations_incorporated_into_outcome_id",
        "escalations",
        ["incorporated_into_outcome_id"],
    )
    op.create_index(
        "idx_escalations_outcome_status_time",
        "escalations",
        ["outcome_id", "status", "created_at"],
    )

    op.create_table(
        "escalation_task_blocks",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(
            ["escalation_id"],
            ["escalations.escalation_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("escalation_id", "task_id", name="pk_escalation_task_blocks"),
    )
    op.create_index("idx_escalation_task_blocks_task", "escalation_task_blocks", ["task_id"])

    op.create_table(
        "observations",
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("evidence_json", sa.Text(), nullable=True),
        sa.Column("escalation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["escalation_id"],
            ["escalations.escalation_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("observation_id"),
    )
    op.create_index("ix_observations_task_id", "observations", ["task_id"])
    op.create_index("ix_observations_kind", "observations", ["kind"])
    op.create_index(
        "idx_observations_outcome_time",
        "observations",
        ["outcome_id", "created_at"],
    )

    op.create_table(
        "review_cycles",
        sa.Column("review_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("issues_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("converged", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("unevaluated_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("review_id"),
        sa.UniqueConstraint(
            "outcome_id",
            "cycle_number",
            name="uq_review_cycles_outcome_cycle",
        ),
    )
    op.create_index("ix_review_cycles_outcome_id", "review_cycles", ["outcome_id"])


def downgrade() -> None:
    op.drop_table("review_cycles")
    op.drop_table("observations")
    op.drop_table("escalation_task_blocks")
    op.drop_table("escalations")
    op.drop_table("workers")
    op.drop_table("task_events")
    op.drop_table("tasks")
    op.drop_table("outcomes")
