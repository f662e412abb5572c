"""Tests for ApprovalWorkflow: 4-eyes requests, decisions, post-approval execution."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from govcore.errors import (
    ApprovalExpiredError,
    ApprovalNotPendingError,
    DomainOperationError,
    NotFoundError,
    RateLimitExceededError,
    SelfApprovalError,
    ValidationError,
)
from govcore.models.approval import ApprovalRequest
from govcore.models.audit import AuditRecord
from govcore.models.enums import ApprovalStatus, DecisionOutcome
from govcore.schemas.governance import AuditEntry
from tests.helpers import ADMIN_A, ADMIN_B, ADMIN_C, CTX_A, CTX_B


async def _actions(db):
    return [r.action for r in (await db.scalars(select(AuditRecord).order_by(AuditRecord.seq))).all()]


async def _submit_delete(workflow, db, target="user-42"):
    return await workflow.submit(db, ADMIN_A, CTX_A, "user_delete", "user", target, {}, "GDPR erasure request")


# ── requires_approval ────────────────────────────────────────────────


class TestRequiresApproval:
    def test_disabled_when_threshold_zero(self, workflow):
        assert workflow.requires_approval("user_delete") is False
        assert workflow.requires_approval("bulk_reject", {"target_ids": list(range(500))}) is False

    def test_user_actions_always_gated(self, workflow, approvals_enabled):
        assert workflow.requires_approval("user_delete") is True
        assert workflow.requires_approval("user_anonymize") is True

    def test_bulk_gated_above_threshold(self, workflow, approvals_enabled):
        assert workflow.requires_approval("bulk_reject", {"target_ids": [str(i) for i in range(10)]}) is False
        assert workflow.requires_approval("bulk_suspend", {"target_ids": [str(i) for i in range(11)]}) is True

    def test_non_destructive_never_gated(self, workflow, approvals_enabled):
        assert workflow.requires_approval("escalation_resolve") is False


# ── Submit ───────────────────────────────────────────────────────────


class TestSubmit:
    @pytest.mark.asyncio()
    async def test_creates_pending_request_and_audit(self, workflow, db, ops, clock):
        request = await _submit_delete(workflow, db)

        assert request.status == "pending"
        assert request.requested_by == "admin-a"
        assert request.reason == "GDPR erasure request"
        assert request.expires_at == clock.now + timedelta(hours=24)
        ops.delete_user.assert_not_awaited()

        record = await db.scalar(select(AuditRecord).where(AuditRecord.action == "approval_requested"))
        assert record.target_type == "approval_request"
        assert record.target_id == str(request.id)
        assert record.details["requested_action"] == "user_delete"
        assert record.details["target_id"] == "user-42"

    @pytest.mark.asyncio()
    async def test_bulk_summary_lists_ids(self, workflow, db):
        ids = [f"app-{i}" for i in range(12)]
        request = await workflow.submit(
            db, ADMIN_A, CTX_A, "bulk_reject", "application", None, {"target_ids": ids}, "duplicate applications"
        )

        record = await db.scalar(select(AuditRecord).where(AuditRecord.target_id == str(request.id)))
        assert record.details["count"] == 12
        assert record.details["target_ids"] == ids

    @pytest.mark.asyncio()
    async def test_bad_reason_records_nothing(self, workflow, db):
        with pytest.raises(ValidationError):
            await workflow.submit(db, ADMIN_A, CTX_A, "user_delete", "user", "u1", {}, "no")
        assert await _actions(db) == []

    @pytest.mark.asyncio()
    async def test_unknown_action_rejected(self, workflow, db):
        with pytest.raises(ValidationError, match="unknown action"):
            await workflow.submit(db, ADMIN_A, CTX_A, "drop_database", None, None, {}, "because I can")


# ── Decide ───────────────────────────────────────────────────────────


class TestDecide:
    @pytest.mark.asyncio()
    async def test_approve_executes_once(self, workflow, db, ops):
        request = await _submit_delete(workflow, db)

        result = await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved", note="verified ticket")

        assert result.outcome is DecisionOutcome.APPROVED
        assert result.executed is True
        assert result.execution_error is None
        assert result.request.status == "approved"
        assert result.request.decided_by == "admin-b"
        assert result.request.decision_note == "verified ticket"
        ops.delete_user.assert_awaited_once_with("user-42")

        assert await _actions(db) == ["approval_requested", "approval_approved", "user_delete"]
        executed = await db.scalar(select(AuditRecord).where(AuditRecord.action == "user_delete"))
        assert executed.actor_id == "admin-b"
        assert executed.details["approval_request_id"] == str(request.id)
        assert executed.details["requested_by"] == "admin-a"
        assert executed.reason == "GDPR erasure request"

    @pytest.mark.asyncio()
    async def test_reject_does_not_execute(self, workflow, db, ops):
        request = await _submit_delete(workflow, db)

        result = await workflow.decide(db, ADMIN_B, CTX_B, request.id, DecisionOutcome.REJECTED)

        assert result.executed is False
        assert result.request.status == "rejected"
        ops.delete_user.assert_not_awaited()
        assert await _actions(db) == ["approval_requested", "approval_rejected"]

    @pytest.mark.asyncio()
    async def test_self_approval_refused_and_audited(self, workflow, db, ops):
        request = await _submit_delete(workflow, db)

        with pytest.raises(SelfApprovalError):
            await workflow.decide(db, ADMIN_A, CTX_A, request.id, "approved")

        await db.refresh(request)
        assert request.status == "pending"
        ops.delete_user.assert_not_awaited()
        assert await _actions(db) == ["approval_requested", "approval_denied_self_approval"]

    @pytest.mark.asyncio()
    async def test_self_rejection_also_refused(self, workflow, db):
        request = await _submit_delete(workflow, db)
        with pytest.raises(SelfApprovalError):
            await workflow.decide(db, ADMIN_A, CTX_A, request.id, "rejected")

    @pytest.mark.asyncio()
    async def test_second_decision_refused(self, workflow, db, ops):
        request = await _submit_delete(workflow, db)
        await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        with pytest.raises(ApprovalNotPendingError, match="already decided"):
            await workflow.decide(db, ADMIN_C, CTX_B, request.id, "rejected")

        assert ops.delete_user.await_count == 1
        actions = await _actions(db)
        assert actions[-1] == "approval_denied_not_pending"
        assert actions.count("approval_approved") == 1

    @pytest.mark.asyncio()
    async def test_lost_race_refused(self, workflow, db, ops, monkeypatch):
        """A decider that read the row as pending loses the conditional update."""
        request = await _submit_delete(workflow, db)
        await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        stale = ApprovalRequest(
            id=request.id,
            action=request.action,
            target_type=request.target_type,
            target_id=request.target_id,
            payload={},
            requested_by="admin-a",
            requested_by_email="a@example.com",
            requested_at=request.requested_at,
            reason=request.reason,
            expires_at=request.expires_at,
            status="pending",
        )

        async def load_stale(session, request_id):
            return stale

        monkeypatch.setattr(workflow, "_load_for_decision", load_stale)
        with pytest.raises(ApprovalNotPendingError):
            await workflow.decide(db, ADMIN_C, CTX_B, request.id, "approved")

        assert ops.delete_user.await_count == 1
        assert (await _actions(db)).count("approval_approved") == 1

    @pytest.mark.asyncio()
    async def test_expired_request_cannot_be_approved(self, workflow, db, ops, clock):
        request = await _submit_delete(workflow, db)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(ApprovalExpiredError):
            await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        ops.delete_user.assert_not_awaited()
        await db.refresh(request)
        assert request.status == "pending"
        assert request.effective_status(clock()) is ApprovalStatus.EXPIRED
        assert (await _actions(db))[-1] == "approval_denied_expired"

    @pytest.mark.asyncio()
    async def test_decidable_exactly_at_expiry(self, workflow, db, clock):
        request = await _submit_delete(workflow, db)
        clock.advance(hours=24)

        result = await workflow.decide(db, ADMIN_B, CTX_B, request.id, "rejected")
        assert result.request.status == "rejected"

    @pytest.mark.asyncio()
    async def test_unknown_request(self, workflow, db):
        with pytest.raises(NotFoundError):
            await workflow.decide(db, ADMIN_B, CTX_B, uuid.uuid4(), "approved")

    @pytest.mark.asyncio()
    async def test_invalid_outcome(self, workflow, db):
        request = await _submit_delete(workflow, db)
        with pytest.raises(ValueError):
            await workflow.decide(db, ADMIN_B, CTX_B, request.id, "maybe")

    @pytest.mark.asyncio()
    async def test_decider_rate_limit_applies_to_approval(self, workflow, ledger, db, ops):
        request = await _submit_delete(workflow, db)
        for i in range(5):
            await ledger.append(db, ADMIN_B, CTX_B, AuditEntry(action="user_anonymize", target_id=f"u{i}", reason="cleanup"))
        await db.commit()

        with pytest.raises(RateLimitExceededError):
            await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        ops.delete_user.assert_not_awaited()
        await db.refresh(request)
        assert request.status == "pending"
        assert (await _actions(db))[-1] == "approval_denied_rate_limit"

    @pytest.mark.asyncio()
    async def test_rejection_ignores_rate_limit(self, workflow, ledger, db):
        request = await _submit_delete(workflow, db)
        for i in range(5):
            await ledger.append(db, ADMIN_B, CTX_B, AuditEntry(action="user_anonymize", target_id=f"u{i}", reason="cleanup"))
        await db.commit()

        result = await workflow.decide(db, ADMIN_B, CTX_B, request.id, "rejected")
        assert result.request.status == "rejected"


# ── Execution failure ────────────────────────────────────────────────


class TestExecutionFailure:
    @pytest.mark.asyncio()
    async def test_failure_recorded_and_approval_stands(self, workflow, db, ops):
        ops.delete_user.side_effect = DomainOperationError("target not found", not_found=True)
        request = await _submit_delete(workflow, db)

        result = await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        assert result.executed is False
        assert isinstance(result.execution_error, DomainOperationError)
        assert result.request.status == "approved"
        assert await _actions(db) == [
            "approval_requested",
            "approval_approved",
            "user_delete",
            "approval_execution_failed",
        ]

        failed = await db.scalar(select(AuditRecord).where(AuditRecord.action == "approval_execution_failed"))
        assert failed.details["error"] == "target not found"
        assert failed.details["approval_request_id"] == str(request.id)
        assert failed.reason == "GDPR erasure request"

    @pytest.mark.asyncio()
    async def test_chain_intact_after_failure(self, workflow, ledger, db, ops):
        ops.delete_user.side_effect = DomainOperationError("domain backend unreachable")
        request = await _submit_delete(workflow, db)
        await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        result = await ledger.verify_chain(db)
        assert result.ok
        assert result.records_checked == 4

    @pytest.mark.asyncio()
    async def test_timeout_during_execution_recorded(self, workflow, ledger, db, ops):
        async def slow_delete(user_id):
            await asyncio.sleep(10)

        ops.delete_user.side_effect = slow_delete
        request = await _submit_delete(workflow, db)

        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.05):
                await workflow.decide(db, ADMIN_B, CTX_B, request.id, "approved")

        assert await _actions(db) == [
            "approval_requested",
            "approval_approved",
            "user_delete",
            "approval_execution_failed",
        ]
        stored = await db.scalar(
            select(ApprovalRequest).where(ApprovalRequest.id == request.id).execution_options(populate_existing=True)
        )
        assert stored.status == "approved"
        assert (await ledger.verify_chain(db)).ok


# ── Listing ──────────────────────────────────────────────────────────


class TestListRequests:
    @pytest.mark.asyncio()
    async def test_filters_by_effective_status(self, workflow, db, clock):
        old = await _submit_delete(workflow, db, target="old")
        clock.advance(hours=23)
        fresh = await _submit_delete(workflow, db, target="fresh")
        decided = await _submit_delete(workflow, db, target="decided")
        await workflow.decide(db, ADMIN_B, CTX_B, decided.id, "rejected")
        clock.advance(hours=2)

        pending, pending_total = await workflow.list_requests(db, ApprovalStatus.PENDING)
        expired, _ = await workflow.list_requests(db, ApprovalStatus.EXPIRED)
        rejected, _ = await workflow.list_requests(db, ApprovalStatus.REJECTED)
        everything, total = await workflow.list_requests(db)

        assert [r.id for r in pending] == [fresh.id]
        assert pending_total == 1
        assert [r.id for r in expired] == [old.id]
        assert [r.id for r in rejected] == [decided.id]
        assert total == 3
        assert len(everything) == 3

    @pytest.mark.asyncio()
    async def test_get_request(self, workflow, db):
        request = await _submit_delete(workflow, db)
        assert (await workflow.get_request(db, request.id)).id == request.id
        with pytest.raises(NotFoundError):
            await workflow.get_request(db, uuid.uuid4())
