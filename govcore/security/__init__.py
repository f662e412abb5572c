"""Governance core: audit ledger, destructive-action gate, approvals, escalations."""

from govcore.security.approvals import approval_workflow
from govcore.security.audit import audit_ledger
from govcore.security.escalations import escalation_engine
from govcore.security.gate import destructive_gate
from govcore.security.governed import governed_actions
from govcore.security.sessions import session_registry
from govcore.security.snapshots import snapshot_service

__all__ = [
    "audit_ledger",
    "destructive_gate",
    "approval_workflow",
    "governed_actions",
    "escalation_engine",
    "snapshot_service",
    "session_registry",
]
