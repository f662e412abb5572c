"""Governance review log.

Admins record a periodic review of the governance controls (who reviewed,
for which period, what they found). The escalation engine raises
`governance_review_overdue` when no review has been logged for
GOVERNANCE_REVIEW_DAYS.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.errors import ValidationError
from govcore.models.base import utcnow
from govcore.models.control_health import GovernanceReview
from govcore.models.enums import AuditAction
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)

_PERIOD_MAX_LENGTH = 20
_SUMMARY_MAX_LENGTH = 10_000


class GovernanceReviewLog:
    def __init__(self, ledger: AuditLedger, clock: Callable[[], datetime] = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock

    async def log_review(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        review_period: str | None,
        summary: str | None = None,
    ) -> GovernanceReview:
        """Record a review and its `governance_review_logged` audit fact together.

        Raises:
            ValidationError: missing or overlong review period.
        """
        period = (review_period or "").strip()
        if not period:
            raise ValidationError("review_period required")
        if len(period) > _PERIOD_MAX_LENGTH:
            raise ValidationError(f"review_period too long: max {_PERIOD_MAX_LENGTH} characters")
        summary = summary.strip()[:_SUMMARY_MAX_LENGTH] if summary and summary.strip() else None

        review = GovernanceReview(
            review_period=period,
            reviewer_id=principal.id,
            reviewer_email=principal.email,
            summary=summary,
            created_at=self._clock(),
        )
        db.add(review)
        await db.flush()

        await self._ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(
                action=AuditAction.GOVERNANCE_REVIEW_LOGGED.value,
                target_type="governance_review",
                target_id=str(review.id),
                details={"review_period": period, "has_summary": summary is not None},
            ),
        )
        await db.commit()

        await emit(SystemEvent(
            event_type=EventType.GOVERNANCE_REVIEW_LOGGED,
            actor_id=principal.id,
            data={"review_period": period},
            source_module="security.reviews",
        ))
        logger.info("Governance review logged: period=%s by %s", period, principal.id)
        return review

    async def list_reviews(self, db: AsyncSession, limit: int = 100) -> list[GovernanceReview]:
        rows = await db.scalars(select(GovernanceReview).order_by(GovernanceReview.created_at.desc()).limit(limit))
        return list(rows.all())


# Module-level singleton
governance_reviews = GovernanceReviewLog(audit_ledger)
