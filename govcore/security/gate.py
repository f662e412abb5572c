"""Destructive-action gate: reason validation and the sliding-window rate limit.

Every destructive action, direct or approved, passes through here before it
runs. The rate limit is a point-in-time count over the audit ledger, so the
window slides with the clock and has no fixed-bucket boundary bursts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import NoReturn

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.config import settings
from govcore.errors import PolicyDeniedError, RateLimitExceededError, ValidationError
from govcore.models.audit import AuditRecord
from govcore.models.base import utcnow
from govcore.models.enums import DESTRUCTIVE_ACTIONS
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)


class DestructiveActionGate:
    """Single choke point for destructive actions."""

    def __init__(self, ledger: AuditLedger, clock: Callable[[], datetime] = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock

    @staticmethod
    def check_reason(action: str, reason: str | None) -> str | None:
        """Validate the justification and return it trimmed.

        Non-destructive actions accept any reason, including none.

        Raises:
            ValidationError: missing, too short or too long for a destructive action.
        """
        trimmed = reason.strip() if isinstance(reason, str) else None
        if action not in DESTRUCTIVE_ACTIONS:
            return trimmed or None

        min_len = settings.governance.admin_reason_min_length
        max_len = settings.governance.admin_reason_max_length
        if not trimmed:
            raise ValidationError("reason required for this action")
        if len(trimmed) < min_len:
            raise ValidationError(f"reason must be at least {min_len} characters")
        if len(trimmed) > max_len:
            raise ValidationError(f"reason must be at most {max_len} characters")
        return trimmed

    async def recent_destructive_count(self, db: AsyncSession, actor_id: str) -> int:
        """Destructive actions recorded for `actor_id` inside the trailing window."""
        window = timedelta(hours=settings.governance.admin_destructive_rate_limit_window_hours)
        since = self._clock() - window
        count = await db.scalar(
            select(func.count())
            .select_from(AuditRecord)
            .where(
                AuditRecord.actor_id == actor_id,
                AuditRecord.action.in_(DESTRUCTIVE_ACTIONS),
                AuditRecord.created_at >= since,
            )
        )
        return count or 0

    async def check_rate_limit(
        self,
        db: AsyncSession,
        actor_id: str,
        action: str,
        extra_pending: int = 0,
    ) -> None:
        """Fail if `actor_id` has used up the destructive-action budget.

        `extra_pending` counts destructive entries about to be written as part
        of the same operation, so a batch is admitted or refused as a whole.

        Raises:
            RateLimitExceededError: count + extra_pending >= threshold.
        """
        if action not in DESTRUCTIVE_ACTIONS:
            return

        threshold = settings.governance.admin_destructive_rate_limit_per_hour
        window_hours = settings.governance.admin_destructive_rate_limit_window_hours
        current = await self.recent_destructive_count(db, actor_id) + extra_pending
        if current >= threshold:
            logger.warning(
                "Destructive rate limit hit: actor=%s action=%s count=%d threshold=%d",
                actor_id,
                action,
                current,
                threshold,
            )
            raise RateLimitExceededError(threshold, window_hours)

    async def deny(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        entry: AuditEntry,
        error: PolicyDeniedError,
    ) -> NoReturn:
        """Record a policy denial durably, then raise it.

        The denial is committed before raising so the request-level rollback
        cannot erase it.
        """
        details = {**entry.details, "error": error.message}
        await self._ledger.append(db, principal, ctx, entry.model_copy(update={"details": details}))
        await db.commit()

        await emit(SystemEvent(
            event_type=EventType.ACTION_DENIED,
            actor_id=principal.id,
            data={
                "action": entry.action,
                "target_type": entry.target_type,
                "target_id": entry.target_id,
                "error": error.message,
            },
            source_module="security.gate",
        ))
        logger.info("Policy denial recorded: %s by %s (%s)", entry.action, principal.id, error.message)
        raise error


# Module-level singleton
destructive_gate = DestructiveActionGate(audit_ledger)
