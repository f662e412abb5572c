"""AdminIdempotencyKey model: stored responses for replayed governed requests."""

from __future__ import annotations

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from govcore.models.base import Base, TimestampMixin


class AdminIdempotencyKey(TimestampMixin, Base):
    """First response to a governed request, keyed by the client's Idempotency-Key."""

    __tablename__ = "admin_idempotency_keys"
    __table_args__ = (
        UniqueConstraint("idempotency_key", "admin_id", "action", name="uq_idempotency_key_admin_action"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    admin_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    response_status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<AdminIdempotencyKey admin={self.admin_id} action={self.action}>"
