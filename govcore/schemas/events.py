"""SystemEvent schema: governance notifications flowing to subscribers.

Events are a side channel: the audit ledger is the authoritative record.
Subscribers (AlertEngine, log sinks) consume these asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the governance core."""

    # Destructive actions
    ACTION_EXECUTED = "action.executed"
    ACTION_FAILED = "action.failed"
    ACTION_DENIED = "action.denied"

    # Approvals
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_DECIDED = "approval.decided"
    APPROVAL_EXECUTION_FAILED = "approval.execution_failed"

    # Ledger
    CHAIN_BROKEN = "audit.chain_broken"
    SNAPSHOT_CREATED = "audit.snapshot_created"

    # Escalations
    ESCALATION_OPENED = "escalation.opened"
    ESCALATION_RAISED = "escalation.raised"
    ESCALATION_RESOLVED = "escalation.resolved"
    GOVERNANCE_REVIEW_LOGGED = "governance.review_logged"

    # Sessions
    SESSION_ANOMALY = "session.anomaly"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"


class SystemEvent(BaseModel):
    """Core event that flows through the governance core.

    Immutable once created. Consumed by:
    - AlertEngine → checks rules and pushes alerts to operators
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    actor_id: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
