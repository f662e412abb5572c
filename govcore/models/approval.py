"""ApprovalRequest model: 4-eyes queue for gated destructive actions."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from govcore.models.base import Base, JSONType, TimestampMixin, as_utc
from govcore.models.enums import ApprovalStatus


class ApprovalRequest(TimestampMixin, Base):
    """A pending or resolved request to perform a gated destructive action.

    `status` only ever moves pending → approved|rejected, once. Expiry is
    never stored: see `effective_status`.
    """

    __tablename__ = "approval_requests"
    __table_args__ = (
        Index("ix_approval_requests_status_expires", "status", "expires_at"),
    )

    # What should happen
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(50))
    target_id: Mapped[str | None] = mapped_column(String(100))
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Who asked, and why
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    requested_by_email: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Decision (set exactly once)
    status: Mapped[str] = mapped_column(
        String(20), default=ApprovalStatus.PENDING.value, nullable=False
    )
    decided_by: Mapped[str | None] = mapped_column(String(100))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    decision_note: Mapped[str | None] = mapped_column(String(2000))

    def is_expired(self, now: datetime) -> bool:
        return self.status == ApprovalStatus.PENDING.value and now > as_utc(self.expires_at)

    def effective_status(self, now: datetime) -> ApprovalStatus:
        """Stored status, with undecided requests past expiry reported as EXPIRED."""
        if self.is_expired(now):
            return ApprovalStatus.EXPIRED
        return ApprovalStatus(self.status)

    def __repr__(self) -> str:
        return f"<ApprovalRequest action={self.action} status={self.status}>"
