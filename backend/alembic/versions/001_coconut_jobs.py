"""Coconut jobs and outputs migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates coconut_jobs and coconut_outputs tables.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create coconut_jobs table
    op.create_table(
        "coconut_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("coconut_id", sa.String(64), nullable=True),
        # Input
        sa.Column("source", sa.String(2048), nullable=False),
        sa.Column("input_url", sa.String(2048), nullable=False),
        sa.Column("input_url_hash", sa.String(32), nullable=False),
        sa.Column("input_status", sa.String(50), nullable=True),
        sa.Column("input_metadata", sa.JSON(), nullable=True),
        # Status tracking
        sa.Column("status", sa.String(32), nullable=False, server_default="starting"),
        sa.Column("progress", sa.String(8), nullable=False, server_default="0%"),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("storage_params", sa.JSON(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_coconut_jobs_coconut_id"),
        "coconut_jobs",
        ["coconut_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_coconut_jobs_input_url_hash"),
        "coconut_jobs",
        ["input_url_hash"],
        unique=False,
    )
    op.create_index(
        op.f("ix_coconut_jobs_status"),
        "coconut_jobs",
        ["status"],
        unique=False,
    )

    # Create coconut_outputs table
    op.create_table(
        "coconut_outputs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(2048), nullable=False),
        sa.Column("format", sa.String(255), nullable=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("path", sa.String(1024), nullable=False),
        sa.Column("storage", sa.JSON(), nullable=True),
        # Result
        sa.Column("url", sa.String(2048), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("progress", sa.String(8), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["job_id"],
            ["coconut_jobs.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
        # One output per source and format; concurrent submissions reuse it
        sa.UniqueConstraint("source", "format", name="uq_coconut_outputs_source_format"),
    )
    op.create_index(
        op.f("ix_coconut_outputs_job_id"),
        "coconut_outputs",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_coconut_outputs_job_key",
        "coconut_outputs",
        ["job_id", "key"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_coconut_outputs_job_key", table_name="coconut_outputs")
    op.drop_index(op.f("ix_coconut_outputs_job_id"), table_name="coconut_outputs")
    op.drop_table("coconut_outputs")
    op.drop_index(op.f("ix_coconut_jobs_status"), table_name="coconut_jobs")
    op.drop_index(op.f("ix_coconut_jobs_input_url_hash"), table_name="coconut_jobs")
    op.drop_index(op.f("ix_coconut_jobs_coconut_id"), table_name="coconut_jobs")
    op.drop_table("coconut_jobs")
