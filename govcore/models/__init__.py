"""SQLAlchemy ORM models for the governance core.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from govcore.models.admin_session import AdminSession
from govcore.models.approval import ApprovalRequest
from govcore.models.audit import AuditChainHead, AuditRecord, AuditSnapshot
from govcore.models.base import Base
from govcore.models.control_health import ControlHealth, GovernanceReview
from govcore.models.enums import (
    ApprovalStatus,
    AuditAction,
    DecisionOutcome,
    EscalationMetric,
    EscalationSeverity,
    GovernedAction,
)
from govcore.models.escalation import Escalation
from govcore.models.idempotency import AdminIdempotencyKey

__all__ = [
    # Base
    "Base",
    # Models
    "AuditRecord",
    "AuditChainHead",
    "AuditSnapshot",
    "ApprovalRequest",
    "Escalation",
    "AdminSession",
    "AdminIdempotencyKey",
    "ControlHealth",
    "GovernanceReview",
    # Enums
    "GovernedAction",
    "AuditAction",
    "ApprovalStatus",
    "DecisionOutcome",
    "EscalationSeverity",
    "EscalationMetric",
]
