"""
RateLimit: one row per identity holding its current submission window.

A row whose `expires_at` has passed is treated as absent. Reservation is a
conditional write (insert, or update WHERE expires_at <= now), so two
concurrent submissions for the same identity cannot both win.
"""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class RateLimit(Base):
    __tablename__ = "rate_limits"

    identity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    accepted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # Token of the submission holding the window; lets a retried reserve
    # recognise its own earlier write.
    reservation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
