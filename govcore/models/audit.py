"""Audit ledger tables: hash-chained, append-only record of admin actions.

`audit_records` is written exclusively by `govcore.security.audit.AuditLedger`.
No code path updates or deletes a row. `audit_chain_head` is the single-row
serialization point every append locks and advances.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from govcore.models.base import Base, IdMixin, JSONType

GENESIS_HASH = "0" * 64  # 32 zero bytes, hex
CHAIN_HEAD_ID = 1


class AuditRecord(IdMixin, Base):
    """One immutable fact about one administrative action."""

    __tablename__ = "audit_records"
    __table_args__ = (
        Index("ix_audit_records_actor_action_created", "actor_id", "action", "created_at"),
    )

    # Chain position (insertion order, assigned by the ledger)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # Who
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # What
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_type: Mapped[str | None] = mapped_column(String(50))
    target_id: Mapped[str | None] = mapped_column(String(100))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    reason: Mapped[str | None] = mapped_column(String(500))

    # Provenance
    client_ip: Mapped[str | None] = mapped_column(String(45))
    session_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Chain
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    row_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditRecord seq={self.seq} action={self.action} actor={self.actor_id}>"


class AuditChainHead(Base):
    """Single row holding the current chain tip. Locked by every append."""

    __tablename__ = "audit_chain_head"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=CHAIN_HEAD_ID)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tip_hash: Mapped[str] = mapped_column(String(64), nullable=False, default=GENESIS_HASH)

    def __repr__(self) -> str:
        return f"<AuditChainHead seq={self.seq} tip={self.tip_hash[:12]}>"


class AuditSnapshot(IdMixin, Base):
    """Signed daily attestation of the chain tip."""

    __tablename__ = "audit_snapshots"

    snapshot_date: Mapped[str] = mapped_column(String(10), nullable=False, unique=True, comment="YYYY-MM-DD")
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_row_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(String(128), nullable=False, comment="Ed25519, hex")
    key_id: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditSnapshot date={self.snapshot_date} seq={self.seq}>"
