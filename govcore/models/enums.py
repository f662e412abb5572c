"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization.
"""

from __future__ import annotations

from enum import Enum


class GovernedAction(str, Enum):
    """The closed set of destructive actions: reason required, rate limited, approvable."""

    USER_DELETE = "user_delete"
    USER_ANONYMIZE = "user_anonymize"
    BULK_REJECT = "bulk_reject"
    BULK_SUSPEND = "bulk_suspend"


DESTRUCTIVE_ACTIONS: frozenset[str] = frozenset(a.value for a in GovernedAction)

# Bulk actions carry their items in payload["target_ids"]
BULK_ACTIONS: frozenset[str] = frozenset({
    GovernedAction.BULK_REJECT.value,
    GovernedAction.BULK_SUSPEND.value,
})


class AuditAction(str, Enum):
    """Non-destructive facts recorded by the governance core itself."""

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_EXECUTION_FAILED = "approval_execution_failed"
    APPROVAL_DENIED_RATE_LIMIT = "approval_denied_rate_limit"
    APPROVAL_DENIED_SELF = "approval_denied_self_approval"
    APPROVAL_DENIED_NOT_PENDING = "approval_denied_not_pending"
    APPROVAL_DENIED_EXPIRED = "approval_denied_expired"
    DESTRUCTIVE_DENIED_RATE_LIMIT = "destructive_denied_rate_limit"
    EXECUTION_FAILED = "execution_failed"
    ESCALATION_OPENED = "escalation_opened"
    ESCALATION_AUTO_RESOLVED = "escalation_auto_resolved"
    ESCALATION_SEVERITY_RAISED = "escalation_severity_raised"
    ESCALATION_RESOLVE = "escalation_resolve"
    GOVERNANCE_REVIEW_LOGGED = "governance_review_logged"
    SESSION_ANOMALY = "session_anomaly"
    SESSION_REVOKE = "session_revoke"
    SNAPSHOT_CREATED = "audit_snapshot_created"


class ApprovalStatus(str, Enum):
    """Approval request lifecycle. EXPIRED is derived at read time, never stored."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class DecisionOutcome(str, Enum):
    """What a decider may choose."""

    APPROVED = "approved"
    REJECTED = "rejected"


class EscalationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class EscalationMetric(str, Enum):
    """Control-health metrics evaluated by the escalation engine."""

    OVERDUE_APPROVALS = "overdue_approvals"
    DESTRUCTIVE_VELOCITY = "destructive_velocity"
    SESSION_ANOMALY = "session_anomaly"
    STALE_ESCALATIONS = "stale_escalations"
    AUDIT_CHAIN_INTEGRITY = "audit_chain_integrity"
    GOVERNANCE_REVIEW_OVERDUE = "governance_review_overdue"
