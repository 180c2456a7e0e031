from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class IdentityRegion(Base):
    """Last confidently-known region for an identity, reused when a check-in carries no location."""

    __tablename__ = "identity_regions"

    identity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    region_bucket: Mapped[str] = mapped_column(String(16), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
