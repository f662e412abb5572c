"""Audit ledger: the only writer of `audit_records`.

Every record is chained to its predecessor:

    row_hash = SHA-256(bytes(prev_hash) || canonical(fields))

where `canonical` is a JSON array of the record's fields in a fixed order.
JSON string escaping gives every field an unambiguous boundary, so
("a", "b") and ("ab", "") never canonicalize to the same bytes.

Appends are serialized through the single `audit_chain_head` row: it is read
with SELECT ... FOR UPDATE and advanced with a compare-and-set on the old tip.
If another writer advanced the tip first, the CAS matches zero rows and the
append re-reads the head and retries. The unique constraints on `seq` and
`prev_hash` reject any fork that slips past both.

Append fails closed: any store error surfaces as LedgerWriteError and the
caller must treat the governed action as not having happened.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.config import settings
from govcore.errors import LedgerWriteError
from govcore.models.audit import CHAIN_HEAD_ID, GENESIS_HASH, AuditChainHead, AuditRecord
from govcore.models.base import as_utc, utcnow
from govcore.schemas.governance import AuditEntry, Principal, RequestContext

logger = logging.getLogger(__name__)

_ACTION_MAX_LENGTH = 100
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# ── Hashing ──────────────────────────────────────────────────────────


def format_timestamp(value: datetime) -> str:
    return as_utc(value).strftime(_TIMESTAMP_FORMAT)


def canonicalize(
    *,
    seq: int,
    actor_id: str,
    actor_email: str,
    action: str,
    target_type: str | None,
    target_id: str | None,
    details: dict[str, Any],
    reason: str | None,
    client_ip: str | None,
    session_id: str | None,
    created_at: datetime,
) -> bytes:
    """Deterministic UTF-8 encoding of every hashed field, in a fixed order."""
    payload = [
        seq,
        actor_id,
        actor_email,
        action,
        target_type,
        target_id,
        details,
        reason,
        client_ip,
        session_id,
        format_timestamp(created_at),
    ]
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_hash(prev_hash: str, canonical: bytes) -> str:
    return hashlib.sha256(bytes.fromhex(prev_hash) + canonical).hexdigest()


def record_hash(record: AuditRecord) -> str:
    """Recompute a stored record's row_hash from its stored fields."""
    canonical = canonicalize(
        seq=record.seq,
        actor_id=record.actor_id,
        actor_email=record.actor_email,
        action=record.action,
        target_type=record.target_type,
        target_id=record.target_id,
        details=record.details or {},
        reason=record.reason,
        client_ip=record.client_ip,
        session_id=record.session_id,
        created_at=record.created_at,
    )
    return compute_hash(record.prev_hash, canonical)


def _normalize_details(details: dict[str, Any]) -> dict[str, Any]:
    """Round-trip through JSON so the hashed value equals what the store returns."""
    return json.loads(json.dumps(details, default=str))


@dataclass
class ChainVerification:
    """Outcome of a chain walk. `broken_at_*` name the first bad record."""

    ok: bool
    records_checked: int = 0
    broken_at_id: Any = None
    broken_at_seq: int | None = None
    reason: str | None = None


@dataclass
class ChainTip:
    seq: int
    tip_hash: str


# ── Ledger ───────────────────────────────────────────────────────────


class AuditLedger:
    """Hash-chained, append-only audit log."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    async def append(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        entry: AuditEntry,
    ) -> AuditRecord:
        """Chain and insert one record in the caller's transaction.

        The record is flushed, not committed: the caller decides the commit
        point so the fact and the change it describes land together.

        Raises:
            LedgerWriteError: the record could not be written. Always fatal.
        """
        try:
            return await self._append(db, principal, ctx, entry)
        except LedgerWriteError:
            raise
        except Exception as exc:
            logger.exception(
                "Audit append failed: action=%s actor=%s target=%s/%s",
                entry.action,
                principal.id,
                entry.target_type,
                entry.target_id,
            )
            raise LedgerWriteError() from exc

    async def _append(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        entry: AuditEntry,
    ) -> AuditRecord:
        reason = entry.reason.strip()[: settings.governance.admin_reason_max_length] if entry.reason else None
        action = entry.action[:_ACTION_MAX_LENGTH]
        details = _normalize_details(entry.details)
        client_ip = ctx.client_ip[:45] if ctx.client_ip else None

        attempts = settings.governance.ledger_append_max_attempts
        for attempt in range(1, attempts + 1):
            tip = await self._read_head(db, lock=True)
            seq = tip.seq + 1
            created_at = self._clock()
            canonical = canonicalize(
                seq=seq,
                actor_id=principal.id,
                actor_email=principal.email,
                action=action,
                target_type=entry.target_type,
                target_id=entry.target_id,
                details=details,
                reason=reason,
                client_ip=client_ip,
                session_id=ctx.session_id,
                created_at=created_at,
            )
            row_hash = compute_hash(tip.tip_hash, canonical)

            result = await db.execute(
                update(AuditChainHead)
                .where(AuditChainHead.id == CHAIN_HEAD_ID, AuditChainHead.tip_hash == tip.tip_hash)
                .values(seq=seq, tip_hash=row_hash)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Audit chain tip moved during append (attempt %d/%d)", attempt, attempts)
                continue

            record = AuditRecord(
                seq=seq,
                actor_id=principal.id,
                actor_email=principal.email,
                action=action,
                target_type=entry.target_type,
                target_id=entry.target_id,
                details=details,
                reason=reason,
                client_ip=client_ip,
                session_id=ctx.session_id,
                created_at=created_at,
                prev_hash=tip.tip_hash,
                row_hash=row_hash,
            )
            db.add(record)
            await db.flush()

            logger.debug("Audit appended: seq=%d action=%s actor=%s", seq, action, principal.id)
            return record

        logger.error("Audit append gave up after %d attempts: action=%s", attempts, action)
        raise LedgerWriteError()

    async def _read_head(self, db: AsyncSession, lock: bool = False) -> ChainTip:
        """Current chain tip. Creates the head row at genesis if it is missing."""
        stmt = select(AuditChainHead.seq, AuditChainHead.tip_hash).where(AuditChainHead.id == CHAIN_HEAD_ID)
        if lock:
            stmt = stmt.with_for_update()
        row = (await db.execute(stmt)).first()
        if row is not None:
            return ChainTip(seq=row.seq, tip_hash=row.tip_hash)

        if not lock:
            return ChainTip(seq=0, tip_hash=GENESIS_HASH)

        db.add(AuditChainHead(id=CHAIN_HEAD_ID, seq=0, tip_hash=GENESIS_HASH))
        await db.flush()
        logger.info("Audit chain head initialized at genesis")
        return ChainTip(seq=0, tip_hash=GENESIS_HASH)

    async def chain_tip(self, db: AsyncSession) -> ChainTip:
        return await self._read_head(db, lock=False)

    async def verify_chain(
        self,
        db: AsyncSession,
        from_seq: int | None = None,
        to_seq: int | None = None,
        page_size: int = 500,
    ) -> ChainVerification:
        """Re-walk records in insertion order and report the first broken link.

        Read-only; takes no locks. Checks, per record: contiguous `seq`,
        `prev_hash` equal to the previous record's `row_hash`, and `row_hash`
        recomputed from stored fields. The head is read once before the walk
        and bounds it, so records appended meanwhile are left for the next
        run. A walk to the end of the chain also checks the last record
        against that head, which catches truncation of the newest records.
        """
        tip = await self._read_head(db, lock=False)
        upper = tip.seq if to_seq is None else min(to_seq, tip.seq)

        start = from_seq if from_seq and from_seq > 1 else 1
        if start > 1:
            prev_hash = await db.scalar(select(AuditRecord.row_hash).where(AuditRecord.seq == start - 1))
            if prev_hash is None:
                return ChainVerification(ok=False, broken_at_seq=start - 1, reason="anchor record missing")
        else:
            prev_hash = GENESIS_HASH

        expected_seq = start
        checked = 0
        while expected_seq <= upper:
            records = await self._page(db, expected_seq, upper, page_size)

            for record in records:
                broken = None
                if record.seq != expected_seq:
                    broken = f"sequence gap: expected {expected_seq}, found {record.seq}"
                elif record.prev_hash != prev_hash:
                    broken = "prev_hash does not match previous row_hash"
                elif record_hash(record) != record.row_hash:
                    broken = "row_hash does not match record contents"
                if broken is not None:
                    logger.warning("Audit chain broken at seq=%d id=%s: %s", record.seq, record.id, broken)
                    return ChainVerification(
                        ok=False,
                        records_checked=checked,
                        broken_at_id=record.id,
                        broken_at_seq=record.seq,
                        reason=broken,
                    )
                prev_hash = record.row_hash
                expected_seq += 1
                checked += 1

            if len(records) < page_size:
                break

        if to_seq is None and (expected_seq - 1 != tip.seq or prev_hash != tip.tip_hash):
            logger.warning("Audit chain head (seq=%d) does not match last record (seq=%d)", tip.seq, expected_seq - 1)
            return ChainVerification(
                ok=False,
                records_checked=checked,
                broken_at_seq=expected_seq,
                reason="chain head does not match last record",
            )

        return ChainVerification(ok=True, records_checked=checked)

    async def _page(self, db: AsyncSession, from_seq: int, to_seq: int, limit: int) -> list[AuditRecord]:
        stmt = (
            select(AuditRecord)
            .where(AuditRecord.seq >= from_seq, AuditRecord.seq <= to_seq)
            .order_by(AuditRecord.seq)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list((await db.scalars(stmt)).all())

    async def list_records(
        self,
        db: AsyncSession,
        *,
        actor_id: str | None = None,
        action: str | None = None,
        target_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditRecord], int]:
        """Newest-first page of records plus the total matching count."""
        stmt = select(AuditRecord)
        count_stmt = select(func.count()).select_from(AuditRecord)
        filters = []
        if actor_id:
            filters.append(AuditRecord.actor_id == actor_id)
        if action:
            filters.append(AuditRecord.action == action)
        if target_id:
            filters.append(AuditRecord.target_id == target_id)
        if filters:
            stmt = stmt.where(*filters)
            count_stmt = count_stmt.where(*filters)

        total = await db.scalar(count_stmt) or 0
        records = (await db.scalars(stmt.order_by(AuditRecord.seq.desc()).limit(limit).offset(offset))).all()
        return list(records), total


# Module-level singleton
audit_ledger = AuditLedger()
