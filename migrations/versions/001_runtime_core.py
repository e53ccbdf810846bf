"""Runtime core tables: agents, credentials, jobs, workers, schedules, ledger.

Revision ID: 001_runtime_core
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001_runtime_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _tenant_column() -> sa.Column:
    return sa.Column("tenant_id", sa.String(64), nullable=False, server_default="default")


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "agents",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_column(),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_agents_tenant_active", "agents", ["tenant_id", "is_active"])
    op.create_index(op.f("ix_agents_tenant_id"), "agents", ["tenant_id"])

    op.create_table(
        "agent_credential_requirements",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant_column(),
        sa.Column("agent_id", sa.String(64), sa.ForeignKey("agents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("inject_method", sa.String(10), nullable=False, server_default="header"),
        sa.Column("field_name", sa.String(255), nullable=True),
        sa.Column("format_template", sa.Text(), nullable=False, server_default="Bearer {{token}}"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("idx_agent_cred_req_agent", "agent_credential_requirements", ["agent_id", "position"])
    op.create_index(op.f("ix_agent_credential_requirements_tenant_id"), "agent_credential_requirements", ["tenant_id"])

    op.create_table(
        "user_credentials",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("encrypted_value", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "user_id", "provider", name="uq_user_credentials_owner_provider"),
    )
    op.create_index("idx_user_credentials_tenant_user", "user_credentials", ["tenant_id", "user_id"])
    op.create_index(op.f("ix_user_credentials_tenant_id"), "user_credentials", ["tenant_id"])

    op.create_table(
        "runtime_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant_column(),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("required_providers", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("source", sa.String(16), nullable=False, server_default="api"),
        sa.Column("schedule_id", UUID(as_uuid=True), nullable=True),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("result", JSONB, nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled', 'timeout')",
            name="ck_runtime_jobs_status",
        ),
        sa.CheckConstraint("retry_count >= 0 AND max_retries >= 0", name="ck_runtime_jobs_retries"),
    )
    op.create_index("idx_runtime_jobs_claim", "runtime_jobs", ["status", "scheduled_at", "priority", "created_at"])
    op.create_index("idx_runtime_jobs_rate", "runtime_jobs", ["tenant_id", "user_id", "agent_id", "created_at"])
    op.create_index("idx_runtime_jobs_agent_completed", "runtime_jobs", ["agent_id", "completed_at"])
    op.create_index("idx_runtime_jobs_worker_status", "runtime_jobs", ["worker_id", "status"])
    op.create_index(op.f("ix_runtime_jobs_tenant_id"), "runtime_jobs", ["tenant_id"])

    op.create_table(
        "runtime_workers",
        sa.Column("worker_id", sa.String(128), primary_key=True),
        _tenant_column(),
        sa.Column("status", sa.String(16), nullable=False, server_default="idle"),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("active_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("capabilities", JSONB, nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_runtime_workers_heartbeat", "runtime_workers", ["status", "last_heartbeat"])
    op.create_index(op.f("ix_runtime_workers_tenant_id"), "runtime_workers", ["tenant_id"])

    op.create_table(
        "runtime_schedules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant_column(),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("cron_expression", sa.String(128), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("payload", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_runtime_schedules_due", "runtime_schedules", ["is_active", "next_run"])
    op.create_index("idx_runtime_schedules_tenant_agent", "runtime_schedules", ["tenant_id", "agent_id"])
    op.create_index(op.f("ix_runtime_schedules_tenant_id"), "runtime_schedules", ["tenant_id"])

    op.create_table(
        "execution_ledger",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant_column(),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("phase", sa.String(32), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("data", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("idx_execution_ledger_job", "execution_ledger", ["job_id", "timestamp"])
    op.create_index("idx_execution_ledger_agent_phase", "execution_ledger", ["agent_id", "phase", "timestamp"])
    op.create_index(op.f("ix_execution_ledger_tenant_id"), "execution_ledger", ["tenant_id"])


def downgrade() -> None:
    for table in (
        "execution_ledger",
        "runtime_schedules",
        "runtime_workers",
        "runtime_jobs",
        "user_credentials",
        "agent_credential_requirements",
        "agents",
    ):
        op.drop_table(table)
