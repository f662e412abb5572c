"""Control health and governance review models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from govcore.models.base import Base, IdMixin


class ControlHealth(Base):
    """Latest health of one escalation metric, overwritten every engine tick."""

    __tablename__ = "control_health"

    metric: Mapped[str] = mapped_column(String(100), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="healthy | warning | failed")
    score: Mapped[int] = mapped_column(Integer, nullable=False, comment="0-100")
    value: Mapped[float | None] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(String(500))
    last_checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ControlHealth metric={self.metric} status={self.status} score={self.score}>"


class GovernanceReview(IdMixin, Base):
    """A periodic governance review signed off by an admin. Append-only."""

    __tablename__ = "governance_reviews"

    review_period: Mapped[str] = mapped_column(String(20), nullable=False, comment="e.g. 2026-Q1")
    reviewer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reviewer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
