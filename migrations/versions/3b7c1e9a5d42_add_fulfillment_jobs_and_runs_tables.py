"""add fulfillment jobs and runs tables

Revision ID: 3b7c1e9a5d42
Revises:
Create Date: 2026-10-19 09:12:31.418205

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7c1e9a5d42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # One row per (run, stage); claimed by workers with a conditional update
    op.create_table(
        "fulfillment_jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "correlation_id",
            sa.Text,
            nullable=False,
            comment="Groups all jobs of one fulfillment run",
        ),
        sa.Column(
            "trigger_type",
            sa.Text,
            nullable=False,
            server_default="unknown",
            comment="Originating event category",
        ),
        sa.Column(
            "stage",
            sa.Text,
            nullable=False,
            comment="Pipeline stage that processes this job",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Opaque stage processor input",
        ),
        sa.Column(
            "context", sa.JSON, nullable=True, comment="Event and tenant metadata"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|running|completed|error",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of attempts made",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="5",
            comment="Attempt ceiling",
        ),
        sa.Column(
            "scheduled_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time the job can be claimed",
        ),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When job was claimed",
        ),
        sa.Column(
            "lock_owner",
            sa.Text,
            nullable=True,
            comment="Worker ID that claimed the job",
        ),
        sa.Column(
            "lease_expires_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim is considered abandoned after this",
        ),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last error message"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "correlation_id", "stage", name="uq_fulfillment_jobs_correlation_stage"
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'error')",
            name="fulfillment_jobs_status_check",
        ),
        sa.CheckConstraint(
            "(status = 'running') = (locked_at IS NOT NULL AND lock_owner IS NOT NULL "
            "AND lease_expires_at IS NOT NULL)",
            name="fulfillment_jobs_lock_fields_check",
        ),
    )

    # Claim scan: queued rows in due order
    op.create_index(
        "ix_fulfillment_jobs_claim",
        "fulfillment_jobs",
        ["status", "scheduled_at", "created_at"],
    )

    # Reaper scan: running rows by lease expiry
    op.create_index(
        "ix_fulfillment_jobs_lease",
        "fulfillment_jobs",
        ["status", "lease_expires_at"],
    )

    op.create_table(
        "fulfillment_runs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.Text, nullable=False, unique=True),
        sa.Column(
            "trigger_type", sa.Text, nullable=False, server_default="unknown"
        ),
        sa.Column(
            "event_id",
            sa.Text,
            nullable=True,
            comment="Originating external event id",
        ),
        sa.Column(
            "event_type",
            sa.Text,
            nullable=True,
            comment="Originating external event type",
        ),
        sa.Column("resource_id", sa.Text, nullable=True),
        sa.Column("stage", sa.Text, nullable=True, comment="Latest stage label"),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Cumulative attempts across jobs",
        ),
        sa.Column("context", sa.JSON, nullable=True),
        sa.Column("resumed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("last_error_stage", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'error')",
            name="fulfillment_runs_status_check",
        ),
    )

    op.create_index(
        "ix_fulfillment_runs_status_updated",
        "fulfillment_runs",
        ["status", "updated_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_fulfillment_runs_status_updated", table_name="fulfillment_runs")
    op.drop_table("fulfillment_runs")
    op.drop_index("ix_fulfillment_jobs_lease", table_name="fulfillment_jobs")
    op.drop_index("ix_fulfillment_jobs_claim", table_name="fulfillment_jobs")
    op.drop_table("fulfillment_jobs")
