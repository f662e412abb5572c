"""Tests for AuditLedger: hash chaining, verification, fail-closed appends."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from govcore.errors import LedgerWriteError
from govcore.models.audit import GENESIS_HASH, AuditChainHead, AuditRecord
from govcore.schemas.governance import AuditEntry
from govcore.security.audit import ChainTip, canonicalize, compute_hash, record_hash
from tests.helpers import ADMIN_A, ADMIN_B, CTX_A, CTX_B


async def _append_many(ledger, db, n, action="approval_requested"):
    records = []
    for i in range(n):
        principal, ctx = (ADMIN_A, CTX_A) if i % 2 == 0 else (ADMIN_B, CTX_B)
        records.append(await ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(action=action, target_type="user", target_id=f"user-{i}", details={"i": i}),
        ))
    await db.commit()
    return records


async def _count(db):
    return await db.scalar(select(func.count()).select_from(AuditRecord))


# ── Hashing ──────────────────────────────────────────────────────────


class TestCanonicalize:
    def _fields(self, **overrides):
        fields = {
            "seq": 1,
            "actor_id": "admin-a",
            "actor_email": "a@example.com",
            "action": "user_delete",
            "target_type": "a",
            "target_id": "b",
            "details": {},
            "reason": None,
            "client_ip": None,
            "session_id": None,
            "created_at": datetime(2026, 1, 1, tzinfo=UTC),
        }
        fields.update(overrides)
        return fields

    def test_field_boundaries_are_unambiguous(self):
        one = canonicalize(**self._fields(target_type="a", target_id="b"))
        two = canonicalize(**self._fields(target_type="ab", target_id=""))
        assert one != two

    def test_none_and_empty_string_differ(self):
        assert canonicalize(**self._fields(reason=None)) != canonicalize(**self._fields(reason=""))

    def test_details_key_order_does_not_matter(self):
        one = canonicalize(**self._fields(details={"a": 1, "b": 2}))
        two = canonicalize(**self._fields(details={"b": 2, "a": 1}))
        assert one == two

    def test_naive_timestamp_treated_as_utc(self):
        aware = canonicalize(**self._fields(created_at=datetime(2026, 1, 1, 12, tzinfo=UTC)))
        naive = canonicalize(**self._fields(created_at=datetime(2026, 1, 1, 12)))
        assert aware == naive

    def test_hash_depends_on_prev_hash(self):
        canonical = canonicalize(**self._fields())
        assert compute_hash(GENESIS_HASH, canonical) != compute_hash("ab" * 32, canonical)


# ── Append ───────────────────────────────────────────────────────────


class TestAppend:
    @pytest.mark.asyncio()
    async def test_first_record_links_to_genesis(self, ledger, db, clock):
        record = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="user_delete", target_id="u1", reason="duplicate account"))
        await db.commit()

        assert record.seq == 1
        assert record.prev_hash == GENESIS_HASH
        assert record.row_hash == record_hash(record)
        assert record.actor_id == "admin-a"
        assert record.client_ip == "10.0.0.1"
        assert record.session_id == "sess-a"
        assert record.created_at == clock.now

    @pytest.mark.asyncio()
    async def test_records_chain_in_insertion_order(self, ledger, db):
        records = await _append_many(ledger, db, 6)

        assert [r.seq for r in records] == [1, 2, 3, 4, 5, 6]
        for prev, cur in zip(records, records[1:]):
            assert cur.prev_hash == prev.row_hash
        assert len({r.prev_hash for r in records}) == 6

        head = await db.get(AuditChainHead, 1, populate_existing=True)
        assert head.seq == 6
        assert head.tip_hash == records[-1].row_hash

    @pytest.mark.asyncio()
    async def test_chain_survives_clock_skew(self, ledger, db, clock):
        first = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="a"))
        clock.advance(hours=-3)
        second = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="b"))
        await db.commit()

        assert second.prev_hash == first.row_hash
        assert (await ledger.verify_chain(db)).ok

    @pytest.mark.asyncio()
    async def test_reason_trimmed_and_truncated(self, ledger, db):
        record = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="note", reason="   " + "x" * 600 + "  "))
        assert record.reason == "x" * 500

    @pytest.mark.asyncio()
    async def test_action_truncated(self, ledger, db):
        record = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="a" * 150))
        assert len(record.action) == 100

    @pytest.mark.asyncio()
    async def test_stale_tip_is_retried(self, ledger, db, monkeypatch):
        await _append_many(ledger, db, 1)
        real_read = ledger._read_head
        calls = {"n": 0}

        async def stale_then_real(session, lock=False):
            calls["n"] += 1
            if calls["n"] == 1:
                return ChainTip(seq=0, tip_hash=GENESIS_HASH)
            return await real_read(session, lock=lock)

        monkeypatch.setattr(ledger, "_read_head", stale_then_real)
        record = await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="after_race"))
        await db.commit()

        assert calls["n"] == 2
        assert record.seq == 2
        assert (await ledger.verify_chain(db)).ok

    @pytest.mark.asyncio()
    async def test_gives_up_after_max_attempts(self, ledger, db, monkeypatch):
        await _append_many(ledger, db, 1)

        async def always_stale(session, lock=False):
            return ChainTip(seq=0, tip_hash=GENESIS_HASH)

        monkeypatch.setattr(ledger, "_read_head", always_stale)
        with pytest.raises(LedgerWriteError, match="internal error"):
            await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="lost"))
        await db.rollback()

        assert await _count(db) == 1

    @pytest.mark.asyncio()
    async def test_forked_insert_rejected_by_store(self, ledger, db):
        records = await _append_many(ledger, db, 2)
        fork = AuditRecord(
            seq=99,
            actor_id="admin-x",
            actor_email="x@example.com",
            action="forged",
            details={},
            created_at=records[1].created_at,
            prev_hash=records[1].prev_hash,
            row_hash="f" * 64,
        )
        db.add(fork)
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio()
    async def test_store_failure_fails_closed(self, ledger):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(LedgerWriteError) as exc_info:
            await ledger.append(db, ADMIN_A, CTX_A, AuditEntry(action="user_delete"))
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "internal error"


# ── Verify ───────────────────────────────────────────────────────────


class TestVerifyChain:
    @pytest.mark.asyncio()
    async def test_empty_ledger_is_intact(self, ledger, db):
        result = await ledger.verify_chain(db)
        assert result.ok
        assert result.records_checked == 0

    @pytest.mark.asyncio()
    async def test_intact_chain_across_pages(self, ledger, db):
        await _append_many(ledger, db, 23)
        result = await ledger.verify_chain(db, page_size=5)
        assert result.ok
        assert result.records_checked == 23
        assert result.broken_at_id is None

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("column", "value"),
        [
            ("reason", "tampered"),
            ("actor_email", "mallory@example.com"),
            ("target_id", "someone-else"),
            ("details", {"i": 999}),
            ("client_ip", "6.6.6.6"),
        ],
    )
    async def test_edited_field_reports_exact_record(self, ledger, db, column, value):
        records = await _append_many(ledger, db, 5)
        target = records[2]
        await db.execute(update(AuditRecord).where(AuditRecord.seq == 3).values({column: value}))
        await db.commit()

        result = await ledger.verify_chain(db)
        assert not result.ok
        assert result.broken_at_id == target.id
        assert result.broken_at_seq == 3
        assert result.records_checked == 2

    @pytest.mark.asyncio()
    async def test_rewritten_hash_breaks_next_link(self, ledger, db):
        records = await _append_many(ledger, db, 4)
        await db.execute(update(AuditRecord).where(AuditRecord.seq == 2).values(row_hash="e" * 64))
        await db.commit()

        result = await ledger.verify_chain(db)
        assert not result.ok
        assert result.broken_at_id == records[1].id

    @pytest.mark.asyncio()
    async def test_deleted_record_detected_as_gap(self, ledger, db):
        records = await _append_many(ledger, db, 5)
        await db.execute(delete(AuditRecord).where(AuditRecord.seq == 3))
        await db.commit()

        result = await ledger.verify_chain(db)
        assert not result.ok
        assert result.broken_at_id == records[3].id
        assert "gap" in result.reason

    @pytest.mark.asyncio()
    async def test_truncated_tail_detected(self, ledger, db):
        await _append_many(ledger, db, 5)
        await db.execute(delete(AuditRecord).where(AuditRecord.seq == 5))
        await db.commit()

        result = await ledger.verify_chain(db)
        assert not result.ok
        assert result.broken_at_seq == 5
        assert result.reason == "chain head does not match last record"

    @pytest.mark.asyncio()
    async def test_append_during_walk_is_not_a_break(self, ledger, db, monkeypatch):
        await _append_many(ledger, db, 3)
        original_page = ledger._page

        async def page_then_append(*args, **kwargs):
            records = await original_page(*args, **kwargs)
            await _append_many(ledger, db, 1, action="user_delete")
            return records

        monkeypatch.setattr(ledger, "_page", page_then_append)
        result = await ledger.verify_chain(db)

        assert result.ok
        assert result.records_checked == 3
        assert await _count(db) == 4

    @pytest.mark.asyncio()
    async def test_partial_range(self, ledger, db):
        await _append_many(ledger, db, 6)
        result = await ledger.verify_chain(db, from_seq=3, to_seq=4)
        assert result.ok
        assert result.records_checked == 2

    @pytest.mark.asyncio()
    async def test_partial_range_ignores_damage_outside_it(self, ledger, db):
        await _append_many(ledger, db, 6)
        await db.execute(update(AuditRecord).where(AuditRecord.seq == 6).values(reason="tampered"))
        await db.commit()

        assert (await ledger.verify_chain(db, from_seq=2, to_seq=5)).ok
        assert not (await ledger.verify_chain(db, from_seq=2)).ok


class TestListRecords:
    @pytest.mark.asyncio()
    async def test_newest_first_with_filters(self, ledger, db):
        await _append_many(ledger, db, 5)
        records, total = await ledger.list_records(db, actor_id="admin-a", limit=2)
        assert total == 3
        assert [r.seq for r in records] == [5, 3]
