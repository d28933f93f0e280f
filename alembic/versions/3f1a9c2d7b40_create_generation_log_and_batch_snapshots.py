"""create_generation_log_and_batch_snapshots

Revision ID: 3f1a9c2d7b40
Revises:
Create Date: 2026-10-12 14:02:51.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the durable generation log and batch snapshot tables."""
    op.create_table(
        "generation_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("item_index", sa.Integer(), nullable=False),
        sa.Column("log_date", sa.String(length=10), nullable=False),
        sa.Column(
            "status",
            sa.Enum("COMPLETED", "FAILED", name="generationlogstatus"),
            nullable=False,
        ),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("content_type", sa.String(length=100), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("error", sa.String(length=2000), nullable=True),
        sa.Column("request_id", sa.String(length=255), nullable=True),
        sa.Column("cost", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_log_batch_id", "generation_log", ["batch_id"])
    op.create_index("ix_generation_log_log_date", "generation_log", ["log_date"])

    op.create_table(
        "batch_snapshots",
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("ix_batch_snapshots_status", "batch_snapshots", ["status"])


def downgrade() -> None:
    """Drop the generation log and batch snapshot tables."""
    op.drop_index("ix_batch_snapshots_status", table_name="batch_snapshots")
    op.drop_table("batch_snapshots")
    op.drop_index("ix_generation_log_log_date", table_name="generation_log")
    op.drop_index("ix_generation_log_batch_id", table_name="generation_log")
    op.drop_table("generation_log")
    sa.Enum(name="generationlogstatus").drop(op.get_bind(), checkfirst=True)
