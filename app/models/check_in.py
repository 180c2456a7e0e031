"""
CheckIn: the canonical, immutable record of one accepted check-in.

This table is the source of truth. Streaks, trending keywords and the
time-series copy are all derived from it and can be rebuilt by reprocessing.
"""
from datetime import datetime
from sqlalchemy import Integer, String, Text, Float, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CheckIn(Base):
    __tablename__ = "check_ins"
    __table_args__ = (
        Index("ix_check_ins_identity_accepted", "identity_id", "accepted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    identity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    emotion: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    intensity: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    region_bucket: Mapped[str] = mapped_column(String(16), nullable=False, default="GLOBAL", index=True)
    # Rounded to 2 decimals (~1 km) for map display only.
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    device_type: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data_retention_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
