"""Escalation model: derived signal that a control-health metric breached."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from govcore.models.base import Base, IdMixin


class Escalation(IdMixin, Base):
    """An open or resolved escalation. Never deleted, only resolved.

    The partial unique index guarantees at most one open escalation per metric.
    """

    __tablename__ = "escalations"
    __table_args__ = (
        Index("ix_escalations_metric_resolved", "metric", "resolved_at"),
        Index(
            "uq_escalations_open_metric",
            "metric",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
    )

    metric: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String(100), comment="Admin id, or 'system'")
    resolution_note: Mapped[str | None] = mapped_column(String(2000))

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def __repr__(self) -> str:
        return f"<Escalation metric={self.metric} severity={self.severity} open={self.is_open}>"
