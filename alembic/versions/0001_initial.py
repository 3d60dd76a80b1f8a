"""Dispatch schema: roster, tasks, usage, audit trail, risk signals, webhooks.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Agents
    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("name_key", sa.String(), nullable=False),
        sa.Column("role", sa.String(), server_default=""),
        sa.Column("status", sa.String(), server_default="idle"),
        sa.Column("escalation_path", postgresql.JSONB(), nullable=True),
        sa.Column("current_task_id", sa.String(36), nullable=True),
        sa.Column("routing_id", sa.String(), nullable=True),
        sa.Column("business_unit", sa.String(), nullable=True),
        sa.Column("last_active_at", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name_key", name="uq_agents_tenant_name"),
    )
    op.create_index("ix_agents_tenant", "agents", ["tenant_id"])
    op.create_index("ix_agents_tenant_routing", "agents", ["tenant_id", "routing_id"])

    # Tasks
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("status", sa.String(), server_default="inbox"),
        sa.Column("assignee_ids", postgresql.JSONB(), server_default="[]"),
        sa.Column("tags", postgresql.JSONB(), server_default="[]"),
        sa.Column("priority", sa.String(), nullable=True),
        sa.Column("source", sa.String(), server_default="manual"),
        sa.Column("task_type", sa.String(), nullable=True),
        sa.Column("business_unit", sa.String(), nullable=True),
        sa.Column("classification_confidence", sa.Float(), nullable=True),
        sa.Column("needs_input", sa.Boolean(), server_default="false"),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.BigInteger(), nullable=True),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        sa.Column("escalation_history", postgresql.JSONB(), server_default="[]"),
        sa.Column("escalation_attempts", sa.Integer(), server_default="0"),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("total_cost", sa.Float(), server_default="0"),
        sa.Column("total_tokens", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_tasks_tenant", "tasks", ["tenant_id"])
    op.create_index("ix_tasks_tenant_status", "tasks", ["tenant_id", "status"])

    # Usage
    op.create_table(
        "usage",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), server_default="0"),
        sa.Column("output_tokens", sa.Integer(), server_default="0"),
        sa.Column("cost", sa.Float(), server_default="0"),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_usage_tenant_created", "usage", ["tenant_id", "created_at"])

    # Audit trail
    op.create_table(
        "activity_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("level", sa.String(), server_default="info"),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
    )
    op.create_index("ix_activity_log_tenant_ts", "activity_log", ["tenant_id", "timestamp"])

    op.create_table(
        "activities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(36), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_activities_tenant_target", "activities", ["tenant_id", "target_id"])

    # Risk signals
    op.create_table(
        "risk_signals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("signal_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("resolved_at", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_risk_signals_tenant_type", "risk_signals", ["tenant_id", "signal_type"])

    # Webhooks
    op.create_table(
        "webhooks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("secret", sa.String(), nullable=False),
        sa.Column("events", postgresql.JSONB(), server_default="[]"),
        sa.Column("enabled", sa.Boolean(), server_default="true"),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("last_delivered_at", sa.BigInteger(), nullable=True),
        sa.Column("fail_count", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_webhooks_tenant", "webhooks", ["tenant_id"])


def downgrade() -> None:
    for table in ("webhooks", "risk_signals", "activities", "activity_log", "usage", "tasks", "agents"):
        op.drop_table(table)
