"""4-eyes approval workflow for gated destructive actions.

State machine:

    pending ──approve──▶ approved ──▶ action executed (or execution failure recorded)
       │
       ├──reject───▶ rejected
       │
       └──(now > expires_at)──▶ expired   (derived at read time, never stored)

Every transition and every refused transition is written to the audit ledger.
Approval and execution are separate ledger facts: a failed execution never
undoes the approval that preceded it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.config import settings
from govcore.domain.client import domain_client
from govcore.domain.operations import DomainOperations, validate_action
from govcore.errors import (
    ApprovalExpiredError,
    ApprovalNotPendingError,
    GovernanceError,
    LedgerWriteError,
    NotFoundError,
    RateLimitExceededError,
    SelfApprovalError,
)
from govcore.models.approval import ApprovalRequest
from govcore.models.base import utcnow
from govcore.models.enums import BULK_ACTIONS, ApprovalStatus, AuditAction, DecisionOutcome, GovernedAction
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger
from govcore.security.execution import execute_recorded
from govcore.security.gate import DestructiveActionGate, destructive_gate

logger = logging.getLogger(__name__)

_ALWAYS_GATED = frozenset({GovernedAction.USER_DELETE.value, GovernedAction.USER_ANONYMIZE.value})
_NOTE_MAX_LENGTH = 2000


def action_summary(action: str, target_type: str | None, target_id: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    """Compact description of an action for audit details."""
    summary: dict[str, Any] = {"requested_action": action, "target_type": target_type, "target_id": target_id}
    if action in BULK_ACTIONS:
        ids = payload.get("target_ids") or []
        summary["target_ids"] = ids
        summary["count"] = len(ids)
    return summary


@dataclass
class DecisionResult:
    """Outcome of a successful decision, including any post-approval execution."""

    request: ApprovalRequest
    outcome: DecisionOutcome
    executed: bool = False
    execution_error: GovernanceError | None = None


class ApprovalWorkflow:
    """Submits, decides and executes approval requests."""

    def __init__(
        self,
        ledger: AuditLedger,
        gate: DestructiveActionGate,
        ops: DomainOperations,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._gate = gate
        self._ops = ops
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def requires_approval(action: str, payload: dict[str, Any] | None = None) -> bool:
        """Whether `action` must go through a second admin.

        Always False while the approval subsystem is disabled (threshold 0).
        """
        threshold = settings.governance.admin_approval_bulk_threshold
        if threshold <= 0:
            return False
        if action in _ALWAYS_GATED:
            return True
        if action in BULK_ACTIONS:
            ids = (payload or {}).get("target_ids") or []
            return len(ids) > threshold
        return False

    # ── Submit ───────────────────────────────────────────────────────

    async def submit(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        action: str,
        target_type: str | None,
        target_id: str | None,
        payload: dict[str, Any],
        reason: str | None,
    ) -> ApprovalRequest:
        """Queue an action for a second admin. The action does not run.

        The request row and its `approval_requested` audit record are
        committed together.

        Raises:
            ValidationError: bad reason or malformed action arguments.
            LedgerWriteError: the request could not be recorded.
        """
        validate_action(action, target_id, payload)
        checked_reason = self._gate.check_reason(action, reason) or ""

        now = self._clock()
        request = ApprovalRequest(
            action=action,
            target_type=target_type,
            target_id=target_id,
            payload=payload,
            requested_by=principal.id,
            requested_by_email=principal.email,
            requested_at=now,
            reason=checked_reason,
            expires_at=now + timedelta(hours=settings.governance.admin_approval_expiry_hours),
            status=ApprovalStatus.PENDING.value,
        )
        db.add(request)
        await db.flush()

        details = action_summary(action, target_type, target_id, payload)
        details["expires_at"] = request.expires_at.isoformat()
        await self._ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(
                action=AuditAction.APPROVAL_REQUESTED.value,
                target_type="approval_request",
                target_id=str(request.id),
                details=details,
                reason=checked_reason,
            ),
        )
        await db.commit()

        await emit(SystemEvent(
            event_type=EventType.APPROVAL_REQUESTED,
            actor_id=principal.id,
            data={"request_id": str(request.id), "action": action, "target_id": target_id},
            source_module="security.approvals",
        ))
        logger.info("Approval requested: %s by %s (request=%s)", action, principal.id, request.id)
        return request

    # ── Decide ───────────────────────────────────────────────────────

    async def decide(
        self,
        db: AsyncSession,
        decider: Principal,
        ctx: RequestContext,
        request_id: uuid.UUID,
        outcome: DecisionOutcome | str,
        note: str | None = None,
    ) -> DecisionResult:
        """Approve or reject a pending request, then execute it if approved.

        Raises:
            NotFoundError: no such request.
            ApprovalNotPendingError: already decided, including a lost race.
            ApprovalExpiredError: past `expires_at`.
            SelfApprovalError: decider is the requester.
            RateLimitExceededError: approving would exceed the decider's budget.
        """
        outcome = DecisionOutcome(outcome)
        note = note.strip()[:_NOTE_MAX_LENGTH] if note else None

        request = await self._load_for_decision(db, request_id)
        if request is None:
            raise NotFoundError("approval request")

        summary = action_summary(request.action, request.target_type, request.target_id, request.payload)
        summary["outcome"] = outcome.value

        def denial(action: AuditAction) -> AuditEntry:
            return AuditEntry(
                action=action.value,
                target_type="approval_request",
                target_id=str(request_id),
                details=summary,
                reason=note,
            )

        now = self._clock()
        if request.status != ApprovalStatus.PENDING.value:
            await self._gate.deny(db, decider, ctx, denial(AuditAction.APPROVAL_DENIED_NOT_PENDING), ApprovalNotPendingError())
        if request.is_expired(now):
            await self._gate.deny(db, decider, ctx, denial(AuditAction.APPROVAL_DENIED_EXPIRED), ApprovalExpiredError())
        if decider.id == request.requested_by:
            await self._gate.deny(db, decider, ctx, denial(AuditAction.APPROVAL_DENIED_SELF), SelfApprovalError())
        if outcome is DecisionOutcome.APPROVED:
            try:
                await self._gate.check_rate_limit(db, decider.id, request.action)
            except RateLimitExceededError as exc:
                await self._gate.deny(db, decider, ctx, denial(AuditAction.APPROVAL_DENIED_RATE_LIMIT), exc)

        result = await db.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request_id, ApprovalRequest.status == ApprovalStatus.PENDING.value)
            .values(status=outcome.value, decided_by=decider.id, decided_at=now, decision_note=note)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._gate.deny(db, decider, ctx, denial(AuditAction.APPROVAL_DENIED_NOT_PENDING), ApprovalNotPendingError())

        decision_action = (
            AuditAction.APPROVAL_APPROVED if outcome is DecisionOutcome.APPROVED else AuditAction.APPROVAL_REJECTED
        )
        await self._ledger.append(
            db,
            decider,
            ctx,
            AuditEntry(
                action=decision_action.value,
                target_type="approval_request",
                target_id=str(request_id),
                details={**summary, "requested_by": request.requested_by},
                reason=note,
            ),
        )
        await db.commit()
        await db.refresh(request)

        await emit(SystemEvent(
            event_type=EventType.APPROVAL_DECIDED,
            actor_id=decider.id,
            data={"request_id": str(request_id), "action": request.action, "outcome": outcome.value},
            source_module="security.approvals",
        ))
        logger.info("Approval %s: request=%s by %s", outcome.value, request_id, decider.id)

        decision = DecisionResult(request=request, outcome=outcome)
        if outcome is DecisionOutcome.APPROVED:
            decision.execution_error = await self.execute_approved_action(db, decider, ctx, request)
            decision.executed = decision.execution_error is None
            await db.refresh(request)
        return decision

    async def _load_for_decision(self, db: AsyncSession, request_id: uuid.UUID) -> ApprovalRequest | None:
        return await db.scalar(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    # ── Execute ──────────────────────────────────────────────────────

    async def execute_approved_action(
        self,
        db: AsyncSession,
        executor: Principal,
        ctx: RequestContext,
        request: ApprovalRequest,
    ) -> GovernanceError | None:
        """Run an approved request through the closed dispatch table.

        The attempt `<action>` record, with the request id in its details, is
        committed before the domain call. Failure adds an
        `approval_execution_failed` record and returns the collaborator's
        error. The core never retries.
        """
        request_id = str(request.id)
        action = request.action
        target_type = request.target_type
        target_id = request.target_id
        payload = dict(request.payload or {})
        details = action_summary(action, target_type, target_id, payload)
        details.update({"approval_request_id": request_id, "requested_by": request.requested_by})
        attempt = AuditEntry(
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details,
            reason=request.reason,
        )

        try:
            await execute_recorded(
                db, self._ledger, self._ops, executor, ctx, attempt, payload,
                AuditAction.APPROVAL_EXECUTION_FAILED.value, details,
            )
        except LedgerWriteError:
            raise
        except GovernanceError as exc:
            logger.warning("Approved action %s failed (request=%s): %s", action, request_id, exc.message)
            await emit(SystemEvent(
                event_type=EventType.APPROVAL_EXECUTION_FAILED,
                actor_id=executor.id,
                data={"request_id": request_id, "action": action, "target_id": target_id, "error": exc.message},
                source_module="security.approvals",
            ))
            return exc

        await emit(SystemEvent(
            event_type=EventType.ACTION_EXECUTED,
            actor_id=executor.id,
            data={"action": action, "target_id": target_id, "approval_request_id": request_id},
            source_module="security.approvals",
        ))
        logger.info("Approved action executed: %s (request=%s)", action, request_id)
        return None

    # ── Queries ──────────────────────────────────────────────────────

    async def get_request(self, db: AsyncSession, request_id: uuid.UUID) -> ApprovalRequest:
        request = await db.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError("approval request")
        return request

    async def list_requests(
        self,
        db: AsyncSession,
        status: ApprovalStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ApprovalRequest], int]:
        """Newest-first page of requests filtered by effective status."""
        now = self._clock()
        pending = ApprovalRequest.status == ApprovalStatus.PENDING.value
        if status is ApprovalStatus.PENDING:
            condition = and_(pending, ApprovalRequest.expires_at >= now)
        elif status is ApprovalStatus.EXPIRED:
            condition = and_(pending, ApprovalRequest.expires_at < now)
        elif status is not None:
            condition = ApprovalRequest.status == status.value
        else:
            condition = None

        stmt = select(ApprovalRequest)
        count_stmt = select(func.count()).select_from(ApprovalRequest)
        if condition is not None:
            stmt = stmt.where(condition)
            count_stmt = count_stmt.where(condition)

        total = await db.scalar(count_stmt) or 0
        rows = (await db.scalars(stmt.order_by(ApprovalRequest.requested_at.desc()).limit(limit).offset(offset))).all()
        return list(rows), total


# Module-level singleton
approval_workflow = ApprovalWorkflow(audit_ledger, destructive_gate, domain_client)
