"""check-ins, analytics events, rate limits and region preferences

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- check_ins (source of truth) ---
    op.create_table(
        "check_ins",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("emotion", sa.String(32), nullable=False),
        sa.Column("intensity", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("region_bucket", sa.String(16), nullable=False, server_default="GLOBAL"),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("device_type", sa.String(16), nullable=False, server_default="unknown"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("data_retention_until", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_check_ins_identity_id", "check_ins", ["identity_id"])
    op.create_index("ix_check_ins_emotion", "check_ins", ["emotion"])
    op.create_index("ix_check_ins_region_bucket", "check_ins", ["region_bucket"])
    op.create_index("ix_check_ins_identity_accepted", "check_ins", ["identity_id", "accepted_at"])

    # --- emotion_events (time-series copy) ---
    op.create_table(
        "emotion_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("check_in_id", sa.String(36), nullable=False),
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("emotion", sa.String(32), nullable=False),
        sa.Column("intensity", sa.Integer(), nullable=False),
        sa.Column("region_bucket", sa.String(16), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_emotion_events_check_in_id", "emotion_events", ["check_in_id"])
    op.create_index("ix_emotion_events_time", "emotion_events", ["time"])

    # --- rate_limits ---
    op.create_table(
        "rate_limits",
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("accepted_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identity_id"),
    )
    op.create_index("ix_rate_limits_expires_at", "rate_limits", ["expires_at"])

    # --- identity_regions ---
    op.create_table(
        "identity_regions",
        sa.Column("identity_id", sa.String(128), nullable=False),
        sa.Column("region_bucket", sa.String(16), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identity_id"),
    )


def downgrade() -> None:
    op.drop_table("identity_regions")
    op.drop_index("ix_rate_limits_expires_at", table_name="rate_limits")
    op.drop_table("rate_limits")
    op.drop_index("ix_emotion_events_time", table_name="emotion_events")
    op.drop_index("ix_emotion_events_check_in_id", table_name="emotion_events")
    op.drop_table("emotion_events")
    op.drop_index("ix_check_ins_identity_accepted", table_name="check_ins")
    op.drop_index("ix_check_ins_region_bucket", table_name="check_ins")
    op.drop_index("ix_check_ins_emotion", table_name="check_ins")
    op.drop_index("ix_check_ins_identity_id", table_name="check_ins")
    op.drop_table("check_ins")
