"""Pydantic schemas shared by the governance services and the admin API.

`Principal` and `RequestContext` are the minimal contract the core expects
from the outer admin layer: an authenticated admin and the provenance of the
request. Both are frozen.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_PRINCIPAL_ID = "system"


class Principal(BaseModel):
    """Authenticated admin. Never anonymous."""

    id: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=1, max_length=255)

    model_config = {"frozen": True}


SYSTEM_PRINCIPAL = Principal(id=SYSTEM_PRINCIPAL_ID, email="system@governance.local")


class RequestContext(BaseModel):
    """Provenance of a call into the core."""

    client_ip: str | None = Field(default=None, max_length=45)
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    model_config = {"frozen": True}


class AuditEntry(BaseModel):
    """Caller-supplied fields of an audit record. The ledger derives the rest."""

    action: str = Field(min_length=1)
    target_type: str | None = None
    target_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None

    model_config = {"frozen": True}


# ── API bodies ───────────────────────────────────────────────────────


class ReasonBody(BaseModel):
    reason: str | None = None


class BulkApplicationsBody(BaseModel):
    action: Literal["reject", "suspend"]
    target_ids: list[str] = Field(min_length=1)
    reason: str | None = None


class DecisionBody(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


class ResolveEscalationBody(BaseModel):
    note: str | None = None


class GovernanceReviewBody(BaseModel):
    review_period: str | None = None
    summary: str | None = None


# ── API responses ────────────────────────────────────────────────────


class AuditRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    seq: int
    actor_id: str
    actor_email: str
    action: str
    target_type: str | None
    target_id: str | None
    details: dict[str, Any]
    reason: str | None
    client_ip: str | None
    session_id: str | None
    created_at: datetime
    prev_hash: str
    row_hash: str


class ApprovalRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    action: str
    target_type: str | None
    target_id: str | None
    payload: dict[str, Any]
    requested_by: str
    requested_at: datetime
    reason: str
    expires_at: datetime
    status: str
    decided_by: str | None
    decided_at: datetime | None
    decision_note: str | None


class EscalationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    metric: str
    value: float
    severity: str
    opened_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_note: str | None


class GovernanceReviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    review_period: str
    reviewer_id: str
    reviewer_email: str
    summary: str | None
    created_at: datetime
