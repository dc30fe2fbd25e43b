"""Create executed_scripts table for one-off script runs

Revision ID: 001_create_executed_scripts
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_create_executed_scripts"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "executed_scripts",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_executed_scripts"),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed', 'skipped')",
            name="executed_script_status",
        ),
        sa.CheckConstraint(
            "timeout_seconds IS NULL OR timeout_seconds > 0",
            name="ck_executed_scripts_timeout_positive",
        ),
    )
    op.create_index(
        "ix_executed_scripts_identifier", "executed_scripts", ["identifier"], unique=True
    )
    op.create_index("ix_executed_scripts_status", "executed_scripts", ["status"])
    op.create_index("ix_executed_scripts_started_at", "executed_scripts", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_executed_scripts_started_at", table_name="executed_scripts")
    op.drop_index("ix_executed_scripts_status", table_name="executed_scripts")
    op.drop_index("ix_executed_scripts_identifier", table_name="executed_scripts")
    op.drop_table("executed_scripts")
