"""Signed daily snapshots of the audit chain tip.

A snapshot attests "on <date> the chain ended at <seq> with <row_hash>":

    message   = "<YYYY-MM-DD>|<seq>|<last_row_hash>"   (UTF-8)
    signature = Ed25519(private_key, message)           (hex)
    key_id    = sha256(raw public key)[:16]             (hex)

The signing key is a base64 32-byte Ed25519 seed in AUDIT_SNAPSHOT_SIGNING_KEY.
Re-running on the same day replaces that day's snapshot.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.config import settings
from govcore.errors import SnapshotSigningError
from govcore.models.audit import AuditRecord, AuditSnapshot
from govcore.models.base import as_utc, utcnow
from govcore.models.enums import AuditAction
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)


def snapshot_message(snapshot_date: str, seq: int, last_row_hash: str) -> bytes:
    return f"{snapshot_date}|{seq}|{last_row_hash}".encode()


def load_signing_key(encoded: str) -> Ed25519PrivateKey:
    """Decode a base64 32-byte seed into an Ed25519 private key."""
    if not encoded:
        raise SnapshotSigningError()
    try:
        seed = base64.b64decode(encoded, validate=True)
        return Ed25519PrivateKey.from_private_bytes(seed)
    except (binascii.Error, ValueError) as exc:
        raise SnapshotSigningError("snapshot signing key is invalid") from exc


def key_id_for(public_key: Ed25519PublicKey) -> str:
    raw = public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)
    return hashlib.sha256(raw).hexdigest()[:16]


@dataclass
class SnapshotVerification:
    ok: bool
    snapshot_date: str | None = None
    seq: int | None = None
    reason: str | None = None


class SnapshotService:
    """Creates and checks signed attestations of the chain tip."""

    def __init__(
        self,
        ledger: AuditLedger,
        clock: Callable[[], datetime] = utcnow,
        signing_key: str | None = None,
    ) -> None:
        self._ledger = ledger
        self._clock = clock
        self._signing_key = signing_key

    def _key(self) -> Ed25519PrivateKey:
        encoded = self._signing_key if self._signing_key is not None else settings.security.audit_snapshot_signing_key
        return load_signing_key(encoded)

    async def create_snapshot(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
    ) -> AuditSnapshot:
        """Sign today's chain tip and store it, replacing any earlier one for today.

        Raises:
            SnapshotSigningError: no usable signing key configured.
        """
        key = self._key()
        key_id = key_id_for(key.public_key())
        now = self._clock()
        snapshot_date = as_utc(now).strftime("%Y-%m-%d")

        tip = await self._ledger.chain_tip(db)
        signature = key.sign(snapshot_message(snapshot_date, tip.seq, tip.tip_hash)).hex()

        snapshot = await db.scalar(select(AuditSnapshot).where(AuditSnapshot.snapshot_date == snapshot_date))
        if snapshot is None:
            snapshot = AuditSnapshot(snapshot_date=snapshot_date)
            db.add(snapshot)
        snapshot.seq = tip.seq
        snapshot.last_row_hash = tip.tip_hash
        snapshot.signature = signature
        snapshot.key_id = key_id
        snapshot.created_at = now
        await db.flush()

        await self._ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(
                action=AuditAction.SNAPSHOT_CREATED.value,
                target_type="audit_snapshot",
                target_id=snapshot_date,
                details={"seq": tip.seq, "last_row_hash": tip.tip_hash, "key_id": key_id},
            ),
        )
        await db.commit()

        await emit(SystemEvent(
            event_type=EventType.SNAPSHOT_CREATED,
            actor_id=principal.id,
            data={"snapshot_date": snapshot_date, "seq": tip.seq, "key_id": key_id},
            source_module="security.snapshots",
        ))
        logger.info("Audit snapshot %s signed at seq=%d (key=%s)", snapshot_date, tip.seq, key_id)
        return snapshot

    async def latest_snapshot(self, db: AsyncSession) -> AuditSnapshot | None:
        return await db.scalar(select(AuditSnapshot).order_by(AuditSnapshot.snapshot_date.desc()).limit(1))

    async def verify_snapshot(self, db: AsyncSession, snapshot: AuditSnapshot) -> SnapshotVerification:
        """Check the signature and that the signed hash is still in the ledger."""
        result = SnapshotVerification(ok=False, snapshot_date=snapshot.snapshot_date, seq=snapshot.seq)
        public_key = self._key().public_key()
        if key_id_for(public_key) != snapshot.key_id:
            result.reason = "snapshot signed with a different key"
            return result

        try:
            public_key.verify(
                bytes.fromhex(snapshot.signature),
                snapshot_message(snapshot.snapshot_date, snapshot.seq, snapshot.last_row_hash),
            )
        except (InvalidSignature, ValueError):
            result.reason = "signature invalid"
            return result

        if snapshot.seq > 0:
            stored = await db.scalar(select(AuditRecord.row_hash).where(AuditRecord.seq == snapshot.seq))
            if stored != snapshot.last_row_hash:
                result.reason = "ledger no longer matches signed hash"
                return result

        result.ok = True
        return result


# Module-level singleton
snapshot_service = SnapshotService(audit_ledger)
