"""Tests for GovernanceReviewLog: audited review entries."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from govcore.errors import ValidationError
from govcore.models.audit import AuditRecord
from tests.helpers import ADMIN_A, ADMIN_B, CTX_A, CTX_B


class TestLogReview:
    @pytest.mark.asyncio()
    async def test_records_review_and_audit(self, reviews, ledger, db, clock):
        review = await reviews.log_review(db, ADMIN_A, CTX_A, "  2026-Q1 ", "  access lists checked  ")

        assert review.review_period == "2026-Q1"
        assert review.summary == "access lists checked"
        assert review.reviewer_id == "admin-a"
        assert review.created_at == clock.now

        record = await db.scalar(select(AuditRecord).where(AuditRecord.action == "governance_review_logged"))
        assert record.target_type == "governance_review"
        assert record.target_id == str(review.id)
        assert record.details == {"review_period": "2026-Q1", "has_summary": True}
        assert (await ledger.verify_chain(db)).ok

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("period", [None, "", "   "])
    async def test_period_required(self, reviews, db, period):
        with pytest.raises(ValidationError, match="review_period required"):
            await reviews.log_review(db, ADMIN_A, CTX_A, period)
        assert await db.scalar(select(AuditRecord)) is None

    @pytest.mark.asyncio()
    async def test_period_too_long(self, reviews, db):
        with pytest.raises(ValidationError):
            await reviews.log_review(db, ADMIN_A, CTX_A, "x" * 21)

    @pytest.mark.asyncio()
    async def test_summary_truncated(self, reviews, db):
        review = await reviews.log_review(db, ADMIN_A, CTX_A, "2026-Q1", "s" * 12_000)
        assert len(review.summary) == 10_000

    @pytest.mark.asyncio()
    async def test_blank_summary_stored_as_none(self, reviews, db):
        review = await reviews.log_review(db, ADMIN_A, CTX_A, "2026-Q1", "   ")
        assert review.summary is None


class TestListReviews:
    @pytest.mark.asyncio()
    async def test_newest_first(self, reviews, db, clock):
        await reviews.log_review(db, ADMIN_A, CTX_A, "2025-Q4")
        clock.advance(days=90)
        await reviews.log_review(db, ADMIN_B, CTX_B, "2026-Q1")

        rows = await reviews.list_reviews(db)
        assert [r.review_period for r in rows] == ["2026-Q1", "2025-Q4"]
        assert [r.review_period for r in await reviews.list_reviews(db, limit=1)] == ["2026-Q1"]
