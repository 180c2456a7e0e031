"""streak days, history and trending ranked sets

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "streak_days",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("day_key", sa.String(10), nullable=False),
        sa.Column("emotion", sa.String(32), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("identity_id", "day_key", name="uq_streak_identity_day"),
    )
    op.create_index("ix_streak_days_identity_id", "streak_days", ["identity_id"])

    op.create_table(
        "history_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("check_in_id", sa.String(36), nullable=True),
        sa.Column("day_key", sa.String(10), nullable=False),
        sa.Column("emotion", sa.String(32), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_history_entries_identity_id", "history_entries", ["identity_id"])

    op.create_table(
        "trending_sets",
        sa.Column("key", sa.String(96), nullable=False),
        sa.Column("dimension", sa.String(16), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_trending_sets_dimension", "trending_sets", ["dimension"])

    op.create_table(
        "trending_scores",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("set_key", sa.String(96), nullable=False),
        sa.Column("keyword", sa.String(128), nullable=False),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("set_key", "keyword", name="uq_trending_set_keyword"),
    )
    op.create_index("ix_trending_set_score", "trending_scores", ["set_key", "score"])


def downgrade() -> None:
    op.drop_index("ix_trending_set_score", table_name="trending_scores")
    op.drop_table("trending_scores")
    op.drop_index("ix_trending_sets_dimension", table_name="trending_sets")
    op.drop_table("trending_sets")
    op.drop_index("ix_history_entries_identity_id", table_name="history_entries")
    op.drop_table("history_entries")
    op.drop_index("ix_streak_days_identity_id", table_name="streak_days")
    op.drop_table("streak_days")
