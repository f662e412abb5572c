"""Principal and request context for the admin API.

Authentication happens upstream: the admin gateway verifies the admin and
forwards the request with a shared bearer token plus identity headers.

    Authorization: Bearer <ADMIN_GATEWAY_TOKEN>
    X-Admin-Id:    <admin user id>
    X-Admin-Email: <admin email>
"""

from __future__ import annotations

import secrets
import uuid

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from govcore.config import settings
from govcore.schemas.governance import SYSTEM_PRINCIPAL_ID, Principal, RequestContext

security = HTTPBearer(auto_error=False)

_IP_MAX_LENGTH = 45
_SESSION_ID_LENGTH = 32


async def verify_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),  # noqa: B008
    admin_id: str | None = Header(default=None, alias="X-Admin-Id"),
    admin_email: str | None = Header(default=None, alias="X-Admin-Email"),
) -> Principal:
    """FastAPI dependency: verify the gateway token and build the Principal.

    Raises 503 when no gateway token is configured, 401 on a bad token and
    on missing identity headers.
    """
    expected = settings.security.admin_gateway_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ADMIN_GATEWAY_TOKEN not configured",
        )

    token_ok = credentials is not None and secrets.compare_digest(
        credentials.credentials.encode("utf-8"),
        expected.encode("utf-8"),
    )
    if not token_ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    admin_id = (admin_id or "").strip()
    admin_email = (admin_email or "").strip()
    # "system" is reserved for the escalation engine's own ledger entries
    if not admin_id or not admin_email or admin_id == SYSTEM_PRINCIPAL_ID:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin identity required")

    return Principal(id=admin_id[:100], email=admin_email[:255])


def client_ip(request: Request) -> str | None:
    """First X-Forwarded-For entry, else X-Real-IP, capped at 45 characters."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first[:_IP_MAX_LENGTH]
    real_ip = request.headers.get("x-real-ip", "").strip()
    return real_ip[:_IP_MAX_LENGTH] or None


def session_id(request: Request) -> str:
    """First 32 characters of the caller's session token, or a fresh opaque id."""
    token = request.headers.get("x-session-token", "").strip()
    if token:
        return token[:_SESSION_ID_LENGTH]
    return uuid.uuid4().hex


async def request_context(request: Request) -> RequestContext:
    """FastAPI dependency: provenance of the current call."""
    return RequestContext(client_ip=client_ip(request), session_id=session_id(request))
