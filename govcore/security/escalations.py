"""Control-health escalation engine.

Each tick samples a fixed set of metrics, maps each value onto its
info/warning/critical bands, and reconciles the `escalations` table:

- breached and nothing open  → open one (audited as `escalation_opened`)
- breached, open, worse band → raise its severity (`escalation_severity_raised`)
- breached and already open  → leave it
- normal and one is open     → resolve it with "metric returned to normal"

Every tick also overwrites the metric's `control_health` row with a status
and a 0-100 score, which `health_summary` rolls up for the dashboard.

Ticks are idempotent. The partial unique index on open escalations makes a
second engine instance lose cleanly instead of opening a duplicate.

Runs embedded in the API process (`start_periodic`) or from cron through
`python -m govcore.cli run-escalations`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from govcore.admin.events import emit
from govcore.config import settings
from govcore.errors import ConflictError, NotFoundError
from govcore.models.admin_session import AdminSession
from govcore.models.approval import ApprovalRequest
from govcore.models.audit import AuditRecord
from govcore.models.base import as_utc, utcnow
from govcore.models.control_health import ControlHealth, GovernanceReview
from govcore.models.enums import (
    DESTRUCTIVE_ACTIONS,
    ApprovalStatus,
    AuditAction,
    EscalationMetric,
    EscalationSeverity,
)
from govcore.models.escalation import Escalation
from govcore.schemas.events import EventType, SystemEvent
from govcore.schemas.governance import SYSTEM_PRINCIPAL, AuditEntry, Principal, RequestContext
from govcore.security.audit import AuditLedger, audit_ledger

logger = logging.getLogger(__name__)

RESOLVED_NOTE = "metric returned to normal"
_NOTE_MAX_LENGTH = 2000

MetricFn = Callable[[AsyncSession, datetime], Awaitable[float]]

_SEVERITY_RANK = {
    EscalationSeverity.INFO.value: 1,
    EscalationSeverity.WARNING.value: 2,
    EscalationSeverity.CRITICAL.value: 3,
}

# (status, score) recorded in control_health per severity band
_HEALTH: dict[EscalationSeverity | None, tuple[str, int]] = {
    None: ("healthy", 100),
    EscalationSeverity.INFO: ("healthy", 80),
    EscalationSeverity.WARNING: ("warning", 50),
    EscalationSeverity.CRITICAL: ("failed", 0),
}


@dataclass(frozen=True)
class Bands:
    """Lower bounds of each severity. A value below `info` is healthy."""

    info: float
    warning: float
    critical: float

    def severity(self, value: float) -> EscalationSeverity | None:
        if value >= self.critical:
            return EscalationSeverity.CRITICAL
        if value >= self.warning:
            return EscalationSeverity.WARNING
        if value >= self.info:
            return EscalationSeverity.INFO
        return None


@dataclass
class TickResult:
    """What one engine tick observed and changed."""

    values: dict[str, float] = field(default_factory=dict)
    opened: list[str] = field(default_factory=list)
    raised: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    still_open: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _bands(metric: EscalationMetric) -> Bands:
    esc = settings.escalation
    if metric is EscalationMetric.OVERDUE_APPROVALS:
        return Bands(esc.overdue_approvals_info, esc.overdue_approvals_warning, esc.overdue_approvals_critical)
    if metric is EscalationMetric.DESTRUCTIVE_VELOCITY:
        return Bands(esc.destructive_velocity_info, esc.destructive_velocity_warning, esc.destructive_velocity_critical)
    if metric is EscalationMetric.SESSION_ANOMALY:
        return Bands(esc.session_anomaly_info, esc.session_anomaly_warning, esc.session_anomaly_critical)
    if metric is EscalationMetric.STALE_ESCALATIONS:
        return Bands(esc.stale_escalations_info, esc.stale_escalations_warning, esc.stale_escalations_critical)
    if metric is EscalationMetric.GOVERNANCE_REVIEW_OVERDUE:
        # Overdue starts at warning
        return Bands(esc.governance_review_days, esc.governance_review_days, esc.governance_review_critical_days)
    # Any chain break is critical
    return Bands(1, 1, 1)


class EscalationEngine:
    """Evaluates control-health metrics and keeps escalations in sync."""

    def __init__(self, ledger: AuditLedger, clock: Callable[[], datetime] = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._ctx = RequestContext(session_id="escalation-engine")

    def metrics(self) -> list[tuple[EscalationMetric, MetricFn]]:
        checks: list[tuple[EscalationMetric, MetricFn]] = [
            (EscalationMetric.OVERDUE_APPROVALS, self.overdue_approvals),
            (EscalationMetric.DESTRUCTIVE_VELOCITY, self.destructive_velocity),
            (EscalationMetric.SESSION_ANOMALY, self.session_anomalies),
            (EscalationMetric.STALE_ESCALATIONS, self.stale_escalations),
            (EscalationMetric.GOVERNANCE_REVIEW_OVERDUE, self.days_since_governance_review),
        ]
        if settings.escalation.escalation_verify_chain:
            checks.append((EscalationMetric.AUDIT_CHAIN_INTEGRITY, self.chain_integrity))
        return checks

    # ── Metrics ──────────────────────────────────────────────────────

    async def overdue_approvals(self, db: AsyncSession, now: datetime) -> float:
        """Requests still stored as pending after their expiry."""
        count = await db.scalar(
            select(func.count())
            .select_from(ApprovalRequest)
            .where(
                ApprovalRequest.status == ApprovalStatus.PENDING.value,
                ApprovalRequest.expires_at < now,
            )
        )
        return float(count or 0)

    async def destructive_velocity(self, db: AsyncSession, now: datetime) -> float:
        """Highest per-admin destructive action count in the last hour."""
        per_actor = (
            select(func.count().label("n"))
            .select_from(AuditRecord)
            .where(
                AuditRecord.action.in_(DESTRUCTIVE_ACTIONS),
                AuditRecord.created_at >= now - timedelta(hours=1),
            )
            .group_by(AuditRecord.actor_id)
            .subquery()
        )
        peak = await db.scalar(select(func.max(per_actor.c.n)))
        return float(peak or 0)

    async def session_anomalies(self, db: AsyncSession, now: datetime) -> float:
        """Sessions opened in the look-back window from an IP new to an existing admin."""
        since = now - timedelta(hours=settings.escalation.session_anomaly_window_hours)
        recent = (await db.scalars(
            select(AdminSession).where(AdminSession.created_at >= since).order_by(AdminSession.created_at)
        )).all()
        if not recent:
            return 0.0

        admin_ids = {s.admin_id for s in recent}
        history = (await db.scalars(
            select(AdminSession)
            .where(AdminSession.admin_id.in_(admin_ids))
            .order_by(AdminSession.created_at)
        )).all()

        seen: dict[str, set[str | None]] = {}
        anomalies = 0
        for sess in history:
            ips = seen.setdefault(sess.admin_id, set())
            if as_utc(sess.created_at) >= as_utc(since) and ips and sess.ip_address not in ips:
                anomalies += 1
            ips.add(sess.ip_address)
        return float(anomalies)

    async def stale_escalations(self, db: AsyncSession, now: datetime) -> float:
        """Other escalations left open longer than the configured number of days."""
        cutoff = now - timedelta(days=settings.escalation.stale_escalation_days)
        count = await db.scalar(
            select(func.count())
            .select_from(Escalation)
            .where(
                Escalation.resolved_at.is_(None),
                Escalation.opened_at < cutoff,
                Escalation.metric != EscalationMetric.STALE_ESCALATIONS.value,
            )
        )
        return float(count or 0)

    async def days_since_governance_review(self, db: AsyncSession, now: datetime) -> float:
        """Whole days since the latest governance review.

        Before the first review is logged, counts from the first audit record,
        so a fresh deployment is not overdue on day one.
        """
        since = await db.scalar(select(func.max(GovernanceReview.created_at)))
        if since is None:
            since = await db.scalar(select(func.min(AuditRecord.created_at)))
        if since is None:
            return 0.0
        return float(max((now - as_utc(since)).days, 0))

    async def chain_integrity(self, db: AsyncSession, now: datetime) -> float:
        verification = await self._ledger.verify_chain(db)
        if verification.ok:
            return 0.0
        await emit(SystemEvent(
            event_type=EventType.CHAIN_BROKEN,
            data={"broken_at_seq": verification.broken_at_seq, "reason": verification.reason},
            source_module="security.escalations",
        ))
        return 1.0

    # ── Tick ─────────────────────────────────────────────────────────

    async def run_once(self, db: AsyncSession) -> TickResult:
        """Evaluate every metric once. Each metric commits independently.

        A metric that cannot be computed or reconciled is logged and listed
        in `errors`; the remaining metrics still run.
        """
        now = self._clock()
        result = TickResult()
        for metric, compute in self.metrics():
            try:
                value = await compute(db, now)
                result.values[metric.value] = value
                severity = _bands(metric).severity(value)
                await self._reconcile(db, metric, value, severity, now, result)
                await self._record_health(db, metric, value, severity, now)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Escalation for %s opened concurrently elsewhere", metric.value)
                result.still_open.append(metric.value)
            except Exception:
                await db.rollback()
                logger.exception("Escalation metric %s failed", metric.value)
                result.errors.append(metric.value)
                await self._record_check_failure(db, metric, now)

        logger.info(
            "Escalation tick: opened=%s raised=%s resolved=%s errors=%s",
            result.opened,
            result.raised,
            result.resolved,
            result.errors,
        )
        return result

    async def _record_health(
        self,
        db: AsyncSession,
        metric: EscalationMetric,
        value: float | None,
        severity: EscalationSeverity | None,
        now: datetime,
        notes: str | None = None,
    ) -> None:
        status, score = _HEALTH[severity]
        if notes is None and severity is not None:
            notes = f"{metric.value} at {value:g} ({severity.value})"
        await db.merge(ControlHealth(
            metric=metric.value, status=status, score=score, value=value, notes=notes, last_checked_at=now,
        ))

    async def _record_check_failure(self, db: AsyncSession, metric: EscalationMetric, now: datetime) -> None:
        try:
            await self._record_health(db, metric, None, EscalationSeverity.CRITICAL, now, notes="check failed")
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Could not record control health for %s", metric.value)

    async def _reconcile(
        self,
        db: AsyncSession,
        metric: EscalationMetric,
        value: float,
        severity: EscalationSeverity | None,
        now: datetime,
        result: TickResult,
    ) -> None:
        current = await db.scalar(
            select(Escalation)
            .where(Escalation.metric == metric.value, Escalation.resolved_at.is_(None))
            .execution_options(populate_existing=True)
        )

        if severity is not None:
            if current is not None:
                if _SEVERITY_RANK[severity.value] > _SEVERITY_RANK.get(current.severity, 0):
                    await self._raise(db, current, metric, value, severity, result)
                else:
                    result.still_open.append(metric.value)
                return
            escalation = Escalation(metric=metric.value, value=value, severity=severity.value, opened_at=now)
            db.add(escalation)
            await db.flush()
            await self._ledger.append(
                db,
                SYSTEM_PRINCIPAL,
                self._ctx,
                AuditEntry(
                    action=AuditAction.ESCALATION_OPENED.value,
                    target_type="escalation",
                    target_id=str(escalation.id),
                    details={"metric": metric.value, "value": value, "severity": severity.value},
                ),
            )
            result.opened.append(metric.value)
            await emit(SystemEvent(
                event_type=EventType.ESCALATION_OPENED,
                data={"metric": metric.value, "value": value, "severity": severity.value},
                source_module="security.escalations",
            ))
            logger.warning("Escalation opened: %s=%s (%s)", metric.value, value, severity.value)
            return

        if current is None:
            return
        closed = await db.execute(
            update(Escalation)
            .where(Escalation.id == current.id, Escalation.resolved_at.is_(None))
            .values(resolved_at=now, resolved_by=SYSTEM_PRINCIPAL.id, resolution_note=RESOLVED_NOTE)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            return
        await self._ledger.append(
            db,
            SYSTEM_PRINCIPAL,
            self._ctx,
            AuditEntry(
                action=AuditAction.ESCALATION_AUTO_RESOLVED.value,
                target_type="escalation",
                target_id=str(current.id),
                details={"metric": metric.value, "value": value},
            ),
        )
        result.resolved.append(metric.value)
        await emit(SystemEvent(
            event_type=EventType.ESCALATION_RESOLVED,
            data={"metric": metric.value, "value": value, "resolved_by": SYSTEM_PRINCIPAL.id},
            source_module="security.escalations",
        ))
        logger.info("Escalation resolved: %s=%s", metric.value, value)

    async def _raise(
        self,
        db: AsyncSession,
        current: Escalation,
        metric: EscalationMetric,
        value: float,
        severity: EscalationSeverity,
        result: TickResult,
    ) -> None:
        previous = current.severity
        raised = await db.execute(
            update(Escalation)
            .where(
                Escalation.id == current.id,
                Escalation.resolved_at.is_(None),
                Escalation.severity == previous,
            )
            .values(severity=severity.value, value=value)
            .execution_options(synchronize_session=False)
        )
        if raised.rowcount != 1:
            result.still_open.append(metric.value)
            return
        details = {"metric": metric.value, "value": value, "severity": severity.value, "previous_severity": previous}
        await self._ledger.append(
            db,
            SYSTEM_PRINCIPAL,
            self._ctx,
            AuditEntry(
                action=AuditAction.ESCALATION_SEVERITY_RAISED.value,
                target_type="escalation",
                target_id=str(current.id),
                details=details,
            ),
        )
        result.raised.append(metric.value)
        await emit(SystemEvent(
            event_type=EventType.ESCALATION_RAISED,
            data=details,
            source_module="security.escalations",
        ))
        logger.warning("Escalation raised: %s=%s (%s -> %s)", metric.value, value, previous, severity.value)

    # ── Manual resolution and queries ────────────────────────────────

    async def resolve_escalation(
        self,
        db: AsyncSession,
        principal: Principal,
        ctx: RequestContext,
        escalation_id: uuid.UUID,
        note: str | None = None,
    ) -> Escalation:
        """Resolve an open escalation by hand. Audited as `escalation_resolve`."""
        escalation = await db.get(Escalation, escalation_id)
        if escalation is None:
            raise NotFoundError("escalation")

        note = note.strip()[:_NOTE_MAX_LENGTH] if note and note.strip() else None
        closed = await db.execute(
            update(Escalation)
            .where(Escalation.id == escalation_id, Escalation.resolved_at.is_(None))
            .values(resolved_at=self._clock(), resolved_by=principal.id, resolution_note=note)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            raise ConflictError("escalation already resolved")

        await self._ledger.append(
            db,
            principal,
            ctx,
            AuditEntry(
                action=AuditAction.ESCALATION_RESOLVE.value,
                target_type="escalation",
                target_id=str(escalation_id),
                details={"metric": escalation.metric, "note": note},
            ),
        )
        await db.commit()
        await db.refresh(escalation)

        await emit(SystemEvent(
            event_type=EventType.ESCALATION_RESOLVED,
            actor_id=principal.id,
            data={"metric": escalation.metric, "resolved_by": principal.id},
            source_module="security.escalations",
        ))
        logger.info("Escalation %s resolved by %s", escalation_id, principal.id)
        return escalation

    async def list_escalations(self, db: AsyncSession, open_only: bool = True, limit: int = 100) -> list[Escalation]:
        stmt = select(Escalation)
        if open_only:
            stmt = stmt.where(Escalation.resolved_at.is_(None))
        rows = (await db.scalars(stmt.order_by(Escalation.opened_at.desc()).limit(limit))).all()
        return list(rows)

    async def health_summary(self, db: AsyncSession) -> dict[str, Any]:
        """Per-metric health from the last tick, with the average as overall score."""
        controls = (await db.scalars(select(ControlHealth).order_by(ControlHealth.metric))).all()
        if not controls:
            return {"overall_score": None, "controls": [], "last_checked_at": None}
        return {
            "overall_score": round(sum(c.score for c in controls) / len(controls)),
            "controls": [
                {
                    "metric": c.metric,
                    "status": c.status,
                    "score": c.score,
                    "value": c.value,
                    "notes": c.notes,
                    "last_checked_at": as_utc(c.last_checked_at).isoformat(),
                }
                for c in controls
            ],
            "last_checked_at": max(as_utc(c.last_checked_at) for c in controls).isoformat(),
        }

    # ── Periodic task ────────────────────────────────────────────────

    def start_periodic(self, session_factory: async_sessionmaker[AsyncSession], interval: float) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(session_factory, interval))
        logger.info("Escalation engine started (interval=%ss)", interval)

    async def stop_periodic(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Escalation engine stopped")

    async def _loop(self, session_factory: async_sessionmaker[AsyncSession], interval: float) -> None:
        while True:
            try:
                async with session_factory() as db:
                    await self.run_once(db)
            except Exception:
                logger.exception("Escalation tick failed")
            await asyncio.sleep(interval)


# Module-level singleton
escalation_engine = EscalationEngine(audit_ledger)
