"""create generation job and usage ledger tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:12:40.118203

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLModel's default mapping
provider_kind = sa.Enum("IMAGE_A", "IMAGE_B", "IMAGE_C", "MUSIC", "VIDEO", name="providerkind")
job_state = sa.Enum("PENDING", "SUBMITTED", "SUCCEEDED", "FAILED", "COMPLETED", name="jobstate")
ledger_entry_type = sa.Enum("DEBIT", "REFUND", "DEPOSIT", name="ledgerentrytype")


def upgrade() -> None:
    """Create generation_jobs, user_balances and ledger_entries."""
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("provider_kind", provider_kind, nullable=False),
        sa.Column("remote_id", sa.String(length=255), nullable=True),
        sa.Column("state", job_state, nullable=False),
        sa.Column("request_params", sa.JSON(), nullable=False),
        sa.Column("result_assets", sa.JSON(), nullable=False),
        sa.Column("cost_units", sa.Integer(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("failure_reason", sa.String(length=1000), nullable=True),
        sa.Column("submit_attempts", sa.Integer(), nullable=False),
        sa.Column("retrieval_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_owner", "generation_jobs", ["owner"])
    op.create_index("ix_generation_jobs_remote_id", "generation_jobs", ["remote_id"])
    op.create_index(
        "ix_generation_jobs_provider_state", "generation_jobs", ["provider_kind", "state"]
    )

    op.create_table(
        "user_balances",
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("entry_type", ledger_entry_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "entry_type", name="uq_ledger_job_entry"),
    )
    op.create_index("ix_ledger_entries_owner", "ledger_entries", ["owner"])
    op.create_index("ix_ledger_entries_job_id", "ledger_entries", ["job_id"])


def downgrade() -> None:
    """Drop the job store tables and their enum types."""
    op.drop_index("ix_ledger_entries_job_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_owner", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("user_balances")
    op.drop_index("ix_generation_jobs_provider_state", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_remote_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_owner", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    bind = op.get_bind()
    ledger_entry_type.drop(bind, checkfirst=True)
    job_state.drop(bind, checkfirst=True)
    provider_kind.drop(bind, checkfirst=True)
