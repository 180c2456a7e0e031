"""
Streak state per identity.

StreakDay     sparse map day_key -> emotion (unique per identity + day).
HistoryEntry  bounded append-only list, newest kept, ordered by id.

Both carry `expires_at`, refreshed on every record; an identity whose rows
have expired starts over.
"""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class StreakDay(Base):
    __tablename__ = "streak_days"
    __table_args__ = (
        UniqueConstraint("identity_id", "day_key", name="uq_streak_identity_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    day_key: Mapped[str] = mapped_column(String(10), nullable=False)
    emotion: Mapped[str] = mapped_column(String(32), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class HistoryEntry(Base):
    __tablename__ = "history_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    check_in_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    day_key: Mapped[str] = mapped_column(String(10), nullable=False)
    emotion: Mapped[str] = mapped_column(String(32), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
