"""Admin governance API: FastAPI router over the governance services.

Every route requires the gateway principal (see `govcore.admin.auth`).
Governed routes answer 200 when the action ran, 202 when it is waiting for
a second admin, and honour an `Idempotency-Key` header.
"""
# ruff: noqa: B008

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.auth import request_context, verify_admin
from govcore.config import settings
from govcore.db.engine import get_session
from govcore.errors import DomainOperationError, GovernanceError, OperationTimeoutError, ValidationError
from govcore.models.enums import ApprovalStatus, DecisionOutcome, GovernedAction
from govcore.schemas.governance import (
    ApprovalRequestOut,
    AuditRecordOut,
    BulkApplicationsBody,
    DecisionBody,
    EscalationOut,
    GovernanceReviewBody,
    GovernanceReviewOut,
    Principal,
    ReasonBody,
    RequestContext,
    ResolveEscalationBody,
)
from govcore.security.approvals import ApprovalWorkflow, approval_workflow
from govcore.security.audit import AuditLedger, audit_ledger
from govcore.security.escalations import EscalationEngine, escalation_engine
from govcore.security.governed import ActionOutcome, GovernedActionService, governed_actions
from govcore.security.idempotency import get_stored_response, normalize_key, store_response
from govcore.security.rate_limiter import EndpointThrottle, endpoint_throttle
from govcore.security.reviews import GovernanceReviewLog, governance_reviews
from govcore.security.sessions import SessionRegistry, session_registry
from govcore.security.snapshots import SnapshotService, snapshot_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

# Widths of the target_id and session_id columns
_MAX_ID_LENGTH = 100
_MAX_SESSION_ID_LENGTH = 64


# ── Service dependencies (overridable in tests) ──────────────────────


def get_ledger() -> AuditLedger:
    return audit_ledger


def get_governed_actions() -> GovernedActionService:
    return governed_actions


def get_approvals() -> ApprovalWorkflow:
    return approval_workflow


def get_escalations() -> EscalationEngine:
    return escalation_engine


def get_snapshots() -> SnapshotService:
    return snapshot_service


def get_sessions() -> SessionRegistry:
    return session_registry


def get_throttle() -> EndpointThrottle:
    return endpoint_throttle


def get_reviews() -> GovernanceReviewLog:
    return governance_reviews


async def current_admin(
    request: Request,
    principal: Principal = Depends(verify_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    sessions: SessionRegistry = Depends(get_sessions),
) -> Principal:
    """Authenticated admin whose session (when the gateway forwards one) is live."""
    if request.headers.get("x-session-token"):
        await sessions.touch_session(db, principal, ctx, request.headers.get("user-agent"))
    return principal


# ── Helpers ──────────────────────────────────────────────────────────


async def _with_timeout(operation: Awaitable[Any]) -> Any:
    """Bound a governed operation by the request-scoped timeout. Fails closed."""
    try:
        async with asyncio.timeout(settings.governance.admin_operation_timeout_seconds):
            return await operation
    except TimeoutError as exc:
        logger.error("Governed operation timed out")
        raise OperationTimeoutError() from exc


def _check_id(name: str, value: str, max_length: int = _MAX_ID_LENGTH) -> str:
    if len(value) > max_length:
        raise ValidationError(f"{name} too long: max {max_length} characters")
    return value


def _outcome_response(outcome: ActionOutcome) -> tuple[int, dict[str, Any]]:
    if outcome.executed:
        return 200, {"ok": True, "audit_id": str(outcome.audit_id)}
    return 202, {"approval_required": True, "request_id": str(outcome.request_id)}


async def _idempotent(
    db: AsyncSession,
    principal: Principal,
    action: str,
    idempotency_key: str | None,
    run: Callable[[], Awaitable[ActionOutcome]],
) -> JSONResponse:
    """Replay the stored response for a repeated key, else run and remember it.

    Execution failures and timeouts are remembered too: the attempt is on the
    ledger, so a retry with the same key must not run the action again.
    Refusals (validation, rate limit) are not stored.
    """
    key = normalize_key(idempotency_key)
    if key is not None:
        stored = await get_stored_response(db, key, principal.id, action)
        if stored is not None:
            logger.info("Idempotent replay: admin=%s action=%s", principal.id, action)
            return JSONResponse(stored.body, status_code=stored.status_code, headers={"Idempotent-Replayed": "true"})

    try:
        outcome = await _with_timeout(run())
    except (DomainOperationError, OperationTimeoutError) as exc:
        if key is not None:
            # Services commit their own failure records; drop anything left half-written
            await db.rollback()
            await store_response(db, key, principal.id, action, exc.status_code, {"error": exc.message})
        raise
    status_code, body = _outcome_response(outcome)
    if key is not None:
        await store_response(db, key, principal.id, action, status_code, body)
    return JSONResponse(body, status_code=status_code)


def _approval_out(request: Any, approvals: ApprovalWorkflow) -> dict[str, Any]:
    out = ApprovalRequestOut.model_validate(request)
    out = out.model_copy(update={"status": request.effective_status(approvals.now()).value})
    return out.model_dump(mode="json")


# ── Governed actions ─────────────────────────────────────────────────


@router.post("/users/{user_id}/delete")
async def delete_user(
    user_id: str,
    body: ReasonBody,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    service: GovernedActionService = Depends(get_governed_actions),
) -> JSONResponse:
    """Delete a user (governed `user_delete`)."""
    _check_id("user_id", user_id)
    action = GovernedAction.USER_DELETE.value
    return await _idempotent(
        db, principal, action, idempotency_key,
        lambda: service.perform(db, principal, ctx, action, "user", user_id, {}, body.reason),
    )


@router.post("/users/{user_id}/anonymize")
async def anonymize_user(
    user_id: str,
    body: ReasonBody,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    service: GovernedActionService = Depends(get_governed_actions),
) -> JSONResponse:
    """Anonymize a user (governed `user_anonymize`)."""
    _check_id("user_id", user_id)
    action = GovernedAction.USER_ANONYMIZE.value
    return await _idempotent(
        db, principal, action, idempotency_key,
        lambda: service.perform(db, principal, ctx, action, "user", user_id, {}, body.reason),
    )


@router.post("/applications/bulk")
async def bulk_applications(
    body: BulkApplicationsBody,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    service: GovernedActionService = Depends(get_governed_actions),
    throttle: EndpointThrottle = Depends(get_throttle),
) -> JSONResponse:
    """Reject or suspend many applications (governed `bulk_reject` / `bulk_suspend`)."""
    await throttle.enforce("bulk", principal.id, settings.throttle.bulk_requests_per_minute)

    ids = list(dict.fromkeys(i.strip() for i in body.target_ids if i and i.strip()))
    if not ids:
        raise ValidationError("target_ids must not be empty")
    max_ids = settings.governance.admin_max_bulk_ids
    if len(ids) > max_ids:
        raise ValidationError(f"too many ids: max {max_ids} per request")
    for target_id in ids:
        _check_id("target id", target_id)

    action = f"bulk_{body.action}"
    return await _idempotent(
        db, principal, action, idempotency_key,
        lambda: service.perform(db, principal, ctx, action, "application", None, {"target_ids": ids}, body.reason),
    )


# ── Approvals ────────────────────────────────────────────────────────


@router.get("/approvals")
async def list_approvals(
    status: ApprovalStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    approvals: ApprovalWorkflow = Depends(get_approvals),
) -> dict[str, Any]:
    """Approval requests, filtered by effective status (expired is derived)."""
    rows, total = await approvals.list_requests(db, status=status, limit=limit, offset=offset)
    return {"items": [_approval_out(r, approvals) for r in rows], "total": total}


async def _decide(
    request_id: uuid.UUID,
    outcome: DecisionOutcome,
    body: DecisionBody,
    principal: Principal,
    ctx: RequestContext,
    db: AsyncSession,
    approvals: ApprovalWorkflow,
) -> JSONResponse:
    result = await _with_timeout(approvals.decide(db, principal, ctx, request_id, outcome, body.note))
    content: dict[str, Any] = {"request": _approval_out(result.request, approvals), "executed": result.executed}
    if result.execution_error is not None:
        # The decision stands; surface the collaborator's failure
        content["error"] = result.execution_error.message
        return JSONResponse(content, status_code=result.execution_error.status_code)
    return JSONResponse(content)


@router.post("/approvals/{request_id}/approve")
async def approve_request(
    request_id: uuid.UUID,
    body: DecisionBody | None = None,
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    approvals: ApprovalWorkflow = Depends(get_approvals),
) -> JSONResponse:
    return await _decide(request_id, DecisionOutcome.APPROVED, body or DecisionBody(), principal, ctx, db, approvals)


@router.post("/approvals/{request_id}/reject")
async def reject_request(
    request_id: uuid.UUID,
    body: DecisionBody | None = None,
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    approvals: ApprovalWorkflow = Depends(get_approvals),
) -> JSONResponse:
    return await _decide(request_id, DecisionOutcome.REJECTED, body or DecisionBody(), principal, ctx, db, approvals)


# ── Audit ledger ─────────────────────────────────────────────────────


@router.get("/audit")
async def list_audit(
    actor_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    target_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    ledger: AuditLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """Newest-first page of the audit ledger."""
    records, total = await ledger.list_records(
        db, actor_id=actor_id, action=action, target_id=target_id, limit=limit, offset=offset
    )
    return {
        "items": [AuditRecordOut.model_validate(r).model_dump(mode="json") for r in records],
        "total": total,
    }


@router.get("/audit/verify")
async def verify_audit(
    from_seq: int | None = Query(default=None, ge=1),
    to_seq: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    ledger: AuditLedger = Depends(get_ledger),
    snapshots: SnapshotService = Depends(get_snapshots),
) -> dict[str, Any]:
    """Verify the hash chain and, when a signing key is configured, the latest snapshot."""
    verification = await ledger.verify_chain(db, from_seq=from_seq, to_seq=to_seq)
    body: dict[str, Any] = {
        "ok": verification.ok,
        "records_checked": verification.records_checked,
        "broken_at_id": str(verification.broken_at_id) if verification.broken_at_id else None,
        "broken_at_seq": verification.broken_at_seq,
        "reason": verification.reason,
        "snapshot": None,
    }
    if settings.security.audit_snapshot_signing_key:
        latest = await snapshots.latest_snapshot(db)
        if latest is not None:
            body["snapshot"] = dataclasses.asdict(await snapshots.verify_snapshot(db, latest))
    return body


@router.post("/audit/snapshot")
async def create_snapshot(
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    snapshots: SnapshotService = Depends(get_snapshots),
    throttle: EndpointThrottle = Depends(get_throttle),
) -> dict[str, Any]:
    """Sign today's chain tip."""
    await throttle.enforce("snapshot", principal.id, settings.throttle.snapshot_requests_per_minute)
    snapshot = await _with_timeout(snapshots.create_snapshot(db, principal, ctx))
    return {
        "snapshot_date": snapshot.snapshot_date,
        "seq": snapshot.seq,
        "last_row_hash": snapshot.last_row_hash,
        "signature": snapshot.signature,
        "key_id": snapshot.key_id,
    }


# ── Escalations ──────────────────────────────────────────────────────


@router.get("/escalations")
async def list_escalations(
    open_only: bool = Query(default=True),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    engine: EscalationEngine = Depends(get_escalations),
) -> dict[str, Any]:
    rows = await engine.list_escalations(db, open_only=open_only)
    return {"items": [EscalationOut.model_validate(r).model_dump(mode="json") for r in rows]}


@router.post("/escalations/run")
async def run_escalations(
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    engine: EscalationEngine = Depends(get_escalations),
) -> dict[str, Any]:
    """Run one engine tick now."""
    logger.info("Escalation tick requested by %s", principal.id)
    result = await engine.run_once(db)
    return dataclasses.asdict(result)


@router.post("/escalations/{escalation_id}/resolve")
async def resolve_escalation(
    escalation_id: uuid.UUID,
    body: ResolveEscalationBody | None = None,
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    engine: EscalationEngine = Depends(get_escalations),
) -> dict[str, Any]:
    note = body.note if body is not None else None
    escalation = await engine.resolve_escalation(db, principal, ctx, escalation_id, note)
    return EscalationOut.model_validate(escalation).model_dump(mode="json")


# ── Control health and governance reviews ────────────────────────────


@router.get("/controls/health")
async def control_health(
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    engine: EscalationEngine = Depends(get_escalations),
) -> dict[str, Any]:
    """Per-metric health recorded by the last escalation tick."""
    return await engine.health_summary(db)


@router.get("/governance-reviews")
async def list_governance_reviews(
    limit: int = Query(default=100, ge=1, le=100),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    reviews: GovernanceReviewLog = Depends(get_reviews),
) -> dict[str, Any]:
    rows = await reviews.list_reviews(db, limit=limit)
    return {"items": [GovernanceReviewOut.model_validate(r).model_dump(mode="json") for r in rows]}


@router.post("/governance-reviews", status_code=201)
async def log_governance_review(
    body: GovernanceReviewBody,
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    reviews: GovernanceReviewLog = Depends(get_reviews),
) -> dict[str, Any]:
    review = await reviews.log_review(db, principal, ctx, body.review_period, body.summary)
    return GovernanceReviewOut.model_validate(review).model_dump(mode="json")


# ── Sessions ─────────────────────────────────────────────────────────


@router.get("/sessions")
async def list_sessions(
    admin_id: str | None = Query(default=None),
    principal: Principal = Depends(current_admin),
    db: AsyncSession = Depends(get_session),
    sessions: SessionRegistry = Depends(get_sessions),
) -> dict[str, Any]:
    rows = await sessions.list_active(db, admin_id=admin_id)
    return {
        "items": [
            {
                "admin_id": s.admin_id,
                "session_id": s.session_id,
                "ip_address": s.ip_address,
                "created_at": s.created_at.isoformat(),
                "last_seen_at": s.last_seen_at.isoformat(),
            }
            for s in rows
        ]
    }


@router.post("/sessions/{session_id}/revoke")
async def revoke_session(
    session_id: str,
    principal: Principal = Depends(current_admin),
    ctx: RequestContext = Depends(request_context),
    db: AsyncSession = Depends(get_session),
    sessions: SessionRegistry = Depends(get_sessions),
) -> dict[str, Any]:
    _check_id("session_id", session_id, _MAX_SESSION_ID_LENGTH)
    await sessions.revoke_session(db, principal, ctx, session_id)
    return {"ok": True}


# ── Error mapping ────────────────────────────────────────────────────


async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    headers: dict[str, str] = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    if exc.status_code >= 500:
        logger.error("Governance error %d on %s: %s", exc.status_code, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GovernanceError, governance_error_handler)  # type: ignore[arg-type]
