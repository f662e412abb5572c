"""Recorded execution of a governed action against the domain backend.

    append attempt ─▶ commit ─▶ domain operation
                                     │
                                     └─ fails or is interrupted ─▶ append failure ─▶ commit

The attempt record is committed before any domain I/O, so the chain head is
never held across a backend call and an action that reached the backend is
always on the ledger, whatever happens to the request afterwards. The
attempt is the destructive record that the rate limit counts, so a failed
or partially failed attempt still uses budget.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from govcore.domain.operations import DomainOperations, execute_action
from govcore.errors import GovernanceError
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "operation interrupted: outcome unknown"


async def execute_recorded(
    db: AsyncSession,
    ledger: AuditLedger,
    ops: DomainOperations,
    principal: Principal,
    ctx: RequestContext,
    attempt: AuditEntry,
    payload: dict[str, Any],
    failure_action: str,
    failure_details: dict[str, Any],
) -> uuid.UUID:
    """Commit `attempt`, run the domain operation, record any failure.

    Returns the attempt record id on success. On failure a `failure_action`
    record pointing at the attempt is committed and the original exception,
    including cancellation, propagates.

    Raises:
        LedgerWriteError: the attempt could not be recorded; nothing ran.
        DomainOperationError: the backend refused or failed.
    """
    record = await ledger.append(db, principal, ctx, attempt)
    attempt_id = record.id
    await db.commit()

    try:
        await execute_action(ops, attempt.action, attempt.target_id, payload)
    except GovernanceError as exc:
        await _record_failure(
            db, ledger, principal, ctx, attempt, attempt_id, failure_action,
            {**failure_details, "error": exc.message, **exc.details},
        )
        raise
    except BaseException as exc:
        message = INTERRUPTED_MESSAGE if isinstance(exc, asyncio.CancelledError) else "internal error"
        logger.warning("Domain operation %s interrupted (%s)", attempt.action, type(exc).__name__)
        await _record_failure(
            db, ledger, principal, ctx, attempt, attempt_id, failure_action,
            {**failure_details, "error": message},
        )
        raise
    return attempt_id


async def _record_failure(
    db: AsyncSession,
    ledger: AuditLedger,
    principal: Principal,
    ctx: RequestContext,
    attempt: AuditEntry,
    attempt_id: uuid.UUID,
    failure_action: str,
    details: dict[str, Any],
) -> None:
    """Commit the failure record in a fresh transaction.

    Never raises: the caller re-raises the original error, which must not be
    replaced by a secondary store failure.
    """
    try:
        await db.rollback()
        await ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(
                action=failure_action,
                target_type=attempt.target_type,
                target_id=attempt.target_id,
                details={**details, "attempt_audit_id": str(attempt_id)},
                reason=attempt.reason,
            ),
        )
        await db.commit()
    except Exception:
        logger.exception("Could not record %s for attempt %s", failure_action, attempt_id)
