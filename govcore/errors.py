"""Exception hierarchy for the governance core.

Every failure either blocks the caller with one of these typed errors or is
durably recorded in the audit ledger. The HTTP layer maps ``status_code``
straight onto the response.
"""

from __future__ import annotations

from typing import Any


class GovernanceError(Exception):
    """Base exception for all governance errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Validation errors: nothing happened, nothing audited


class ValidationError(GovernanceError):
    """Bad or missing reason, malformed payload, unknown action."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, status_code=400, details=details)


class NotFoundError(GovernanceError):
    """Resource not found."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found", status_code=404)


# Policy denials: the denial itself is audited


class PolicyDeniedError(GovernanceError):
    """A governance rule refused the attempt."""


class RateLimitExceededError(PolicyDeniedError):
    def __init__(self, threshold: int, window_hours: int) -> None:
        super().__init__(
            f"rate limit exceeded: max {threshold} per {window_hours} hour(s)",
            status_code=429,
            details={"threshold": threshold, "window_hours": window_hours},
        )
        self.retry_after = window_hours * 3600


class SelfApprovalError(PolicyDeniedError):
    def __init__(self) -> None:
        super().__init__("approver cannot be the same as requester", status_code=403)


class ApprovalNotPendingError(PolicyDeniedError):
    def __init__(self) -> None:
        super().__init__("already decided: request is no longer pending", status_code=409)


class ApprovalExpiredError(PolicyDeniedError):
    def __init__(self) -> None:
        super().__init__("request has expired", status_code=409)


class SessionRevokedError(PolicyDeniedError):
    def __init__(self) -> None:
        super().__init__("session revoked", status_code=401)


class ThrottledError(PolicyDeniedError):
    """Endpoint throttle (not the destructive-action gate)."""

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message, status_code=429, details={"retry_after": retry_after})
        self.retry_after = retry_after


# Store and collaborator failures


class LedgerWriteError(GovernanceError):
    """The audit ledger could not durably record a fact. Fails closed."""

    def __init__(self, message: str = "internal error") -> None:
        super().__init__(message, status_code=500)


class DomainOperationError(GovernanceError):
    """The external domain operation refused or failed."""

    def __init__(self, message: str, not_found: bool = False) -> None:
        super().__init__(message, status_code=404 if not_found else 502)
        self.not_found = not_found


class OperationTimeoutError(GovernanceError):
    """A governed operation outran the request timeout; its outcome is unknown."""

    def __init__(self, message: str = "operation timed out") -> None:
        super().__init__(message, status_code=504)


class SnapshotSigningError(GovernanceError):
    def __init__(self, message: str = "snapshot signing key not configured") -> None:
        super().__init__(message, status_code=503)


class ConflictError(GovernanceError):
    """The resource is no longer in the state the operation expects."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=409)
