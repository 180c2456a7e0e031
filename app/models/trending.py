"""
Trending ranked sets.

TrendingSet    one row per ranked set (e.g. "global", "emotion:Joy",
                 "region:US-CA", "hourly:2026-10-19T14") with a wholesale
                 expiry. Stored scores never decay individually.
TrendingScore  accumulated decayed weight per (set_key, keyword).
"""
from datetime import datetime
from sqlalchemy import Integer, String, Float, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class TrendingSet(Base):
    __tablename__ = "trending_sets"

    key: Mapped[str] = mapped_column(String(96), primary_key=True)
    dimension: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TrendingScore(Base):
    __tablename__ = "trending_scores"
    __table_args__ = (
        UniqueConstraint("set_key", "keyword", name="uq_trending_set_keyword"),
        Index("ix_trending_set_score", "set_key", "score"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    set_key: Mapped[str] = mapped_column(String(96), nullable=False)
    keyword: Mapped[str] = mapped_column(String(128), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
