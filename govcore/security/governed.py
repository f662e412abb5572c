"""Governed action entry point: the path every destructive admin request takes.

    reason check ─▶ approval required? ──yes──▶ submit (202, nothing executes)
                          │
                          no
                          ▼
                   rate limit ─▶ commit audit row ─▶ domain operation

The audit row is committed before the domain call, so an action whose fact
cannot be recorded never runs. If the domain call fails or the request is
cancelled, an `execution_failed` fact pointing at that row follows it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.domain.client import domain_client
from govcore.domain.operations import DomainOperations, validate_action
from govcore.errors import GovernanceError, LedgerWriteError, RateLimitExceededError
from govcore.models.enums import AuditAction
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.approvals import ApprovalWorkflow, action_summary, approval_workflow
from govcore.security.audit import AuditLedger, audit_ledger
from govcore.security.execution import execute_recorded
from govcore.security.gate import DestructiveActionGate, destructive_gate

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    """Either executed now (`audit_id` set) or queued for approval (`request_id` set)."""

    executed: bool
    audit_id: uuid.UUID | None = None
    request_id: uuid.UUID | None = None


class GovernedActionService:
    """Runs destructive actions through the gate, the workflow and the ledger."""

    def __init__(
        self,
        ledger: AuditLedger,
        gate: DestructiveActionGate,
        approvals: ApprovalWorkflow,
        ops: DomainOperations,
    ) -> None:
        self._ledger = ledger
        self._gate = gate
        self._approvals = approvals
        self._ops = ops

    async def perform(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        action: str,
        target_type: str | None,
        target_id: str | None,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> ActionOutcome:
        """Execute `action` directly, or submit it for approval when gated.

        Raises:
            ValidationError: bad reason or arguments. Nothing recorded.
            RateLimitExceededError: denial recorded, nothing executed.
            DomainOperationError: attempt and `execution_failed` recorded.
            LedgerWriteError: nothing executed.
            asyncio.CancelledError: attempt and `execution_failed` recorded,
                backend outcome unknown.
        """
        payload = payload or {}
        validate_action(action, target_id, payload)
        checked_reason = self._gate.check_reason(action, reason)

        if self._approvals.requires_approval(action, payload):
            request = await self._approvals.submit(
                db, principal, ctx, action, target_type, target_id, payload, checked_reason
            )
            return ActionOutcome(executed=False, request_id=request.id)

        summary = action_summary(action, target_type, target_id, payload)
        try:
            await self._gate.check_rate_limit(db, principal.id, action)
        except RateLimitExceededError as exc:
            await self._gate.deny(
                db,
                principal,
                ctx,
                AuditEntry(
                    action=AuditAction.DESTRUCTIVE_DENIED_RATE_LIMIT.value,
                    target_type=target_type,
                    target_id=target_id,
                    details=summary,
                    reason=checked_reason,
                ),
                exc,
            )

        details = {k: v for k, v in summary.items() if k in ("target_ids", "count")}
        attempt = AuditEntry(
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details,
            reason=checked_reason,
        )
        try:
            audit_id = await execute_recorded(
                db, self._ledger, self._ops, principal, ctx, attempt, payload,
                AuditAction.EXECUTION_FAILED.value, summary,
            )
        except LedgerWriteError:
            raise
        except GovernanceError as exc:
            logger.warning("Governed action %s by %s failed: %s", action, principal.id, exc.message)
            await emit(SystemEvent(
                event_type=EventType.ACTION_FAILED,
                actor_id=principal.id,
                data={"action": action, "target_id": target_id, "error": exc.message},
                source_module="security.governed",
            ))
            raise

        await emit(SystemEvent(
            event_type=EventType.ACTION_EXECUTED,
            actor_id=principal.id,
            data={"action": action, "target_id": target_id, **details},
            source_module="security.governed",
        ))
        logger.info("Governed action executed: %s by %s (target=%s)", action, principal.id, target_id)
        return ActionOutcome(executed=True, audit_id=audit_id)


# Module-level singleton
governed_actions = GovernedActionService(audit_ledger, destructive_gate, approval_workflow, domain_client)
