"""Admin session registry.

Tracks where each admin session was first and last seen. A new session from
an IP none of the admin's earlier sessions used is recorded in the ledger as
`session_anomaly`; the escalation engine counts the same condition.
Revoked sessions are refused.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.admin.events import emit
from govcore.errors import NotFoundError, SessionRevokedError
from govcore.models.admin_session import AdminSession
from govcore.models.base import utcnow
from govcore.models.enums import AuditAction
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)

_USER_AGENT_MAX_LENGTH = 500


class SessionRegistry:
    """Create, refresh and revoke admin sessions."""

    def __init__(self, ledger: AuditLedger, clock: Callable[[], datetime] = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock

    async def touch_session(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        user_agent: str | None = None,
    ) -> AdminSession:
        """Register or refresh the caller's session.

        Raises:
            SessionRevokedError: the session was revoked.
        """
        now = self._clock()
        session = await db.scalar(
            select(AdminSession)
            .where(AdminSession.session_id == ctx.session_id)
            .execution_options(populate_existing=True)
        )
        if session is not None:
            if session.revoked_at is not None or not session.is_active:
                logger.warning("Revoked session used: admin=%s session=%s", principal.id, ctx.session_id[:8])
                raise SessionRevokedError()
            session.last_seen_at = now
            if ctx.client_ip:
                session.ip_address = ctx.client_ip
            await db.commit()
            return session

        known_ips = set((await db.scalars(
            select(AdminSession.ip_address).where(AdminSession.admin_id == principal.id)
        )).all())

        session = AdminSession(
            admin_id=principal.id,
            session_id=ctx.session_id,
            ip_address=ctx.client_ip,
            user_agent=user_agent[:_USER_AGENT_MAX_LENGTH] if user_agent else None,
            created_at=now,
            last_seen_at=now,
            is_active=True,
        )
        db.add(session)
        await db.flush()

        if known_ips and ctx.client_ip not in known_ips:
            await self._ledger.append(
                db,
                principal,
                ctx,
                AuditEntry(
                    action=AuditAction.SESSION_ANOMALY.value,
                    target_type="admin_session",
                    target_id=ctx.session_id,
                    details={"new_ip": ctx.client_ip, "known_ip_count": len(known_ips)},
                ),
            )
            await emit(SystemEvent(
                event_type=EventType.SESSION_ANOMALY,
                actor_id=principal.id,
                data={"admin_id": principal.id, "ip": ctx.client_ip},
                source_module="security.sessions",
            ))
            logger.warning("New IP for admin %s: %s", principal.id, ctx.client_ip)

        await db.commit()
        return session

    async def revoke_session(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        session_id: str,
    ) -> None:
        """Revoke an active session. Audited as `session_revoke`."""
        revoked = await db.execute(
            update(AdminSession)
            .where(AdminSession.session_id == session_id, AdminSession.revoked_at.is_(None))
            .values(revoked_at=self._clock(), is_active=False)
            .execution_options(synchronize_session=False)
        )
        if revoked.rowcount != 1:
            raise NotFoundError("active session")

        await self._ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(action=AuditAction.SESSION_REVOKE.value, target_type="admin_session", target_id=session_id),
        )
        await db.commit()
        logger.info("Session %s revoked by %s", session_id[:8], principal.id)

    async def list_active(self, db: AsyncSession, admin_id: str | None = None) -> list[AdminSession]:
        stmt = select(AdminSession).where(AdminSession.is_active.is_(True))
        if admin_id:
            stmt = stmt.where(AdminSession.admin_id == admin_id)
        return list((await db.scalars(stmt.order_by(AdminSession.last_seen_at.desc()))).all())


# Module-level singleton
session_registry = SessionRegistry(audit_ledger)
