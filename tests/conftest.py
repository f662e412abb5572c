"""Shared fixtures: in-memory SQLite database, fake clock, wired services."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from govcore.config import settings
from govcore.models import Base
from govcore.security.approvals import ApprovalWorkflow
from govcore.security.audit import AuditLedger
from govcore.security.escalations import EscalationEngine
from govcore.security.gate import DestructiveActionGate
from govcore.security.governed import GovernedActionService
from govcore.security.reviews import GovernanceReviewLog
from govcore.security.sessions import SessionRegistry
from tests.helpers import FakeClock, make_engine, make_file_engine


@pytest_asyncio.fixture
async def session_factory():
    engine = make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database: every session gets its own connection, for races."""
    engine = make_file_engine(tmp_path / "governance.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return AuditLedger(clock)


@pytest.fixture
def gate(ledger, clock):
    return DestructiveActionGate(ledger, clock)


@pytest.fixture
def ops():
    """DomainOperations double; every operation succeeds unless told otherwise."""
    ops = AsyncMock()
    ops.delete_user = AsyncMock(return_value=None)
    ops.anonymize_user = AsyncMock(return_value=None)
    ops.reject_applications = AsyncMock(return_value=None)
    ops.suspend_applications = AsyncMock(return_value=None)
    return ops


@pytest.fixture
def workflow(ledger, gate, ops, clock):
    return ApprovalWorkflow(ledger, gate, ops, clock)


@pytest.fixture
def governed(ledger, gate, workflow, ops):
    return GovernedActionService(ledger, gate, workflow, ops)


@pytest.fixture
def escalations(ledger, clock):
    return EscalationEngine(ledger, clock)


@pytest.fixture
def sessions(ledger, clock):
    return SessionRegistry(ledger, clock)


@pytest.fixture
def reviews(ledger, clock):
    return GovernanceReviewLog(ledger, clock)


@pytest.fixture
def approvals_enabled(monkeypatch):
    """Turn the 4-eyes flow on with a bulk threshold of 10."""
    monkeypatch.setattr(settings.governance, "admin_approval_bulk_threshold", 10)
    return 10


@pytest.fixture(autouse=True)
def _governance_defaults(monkeypatch):
    """Pin the settings every test relies on, whatever the local .env says."""
    monkeypatch.setattr(settings.governance, "admin_approval_bulk_threshold", 0)
    monkeypatch.setattr(settings.governance, "admin_destructive_rate_limit_per_hour", 5)
    monkeypatch.setattr(settings.governance, "admin_destructive_rate_limit_window_hours", 1)
    monkeypatch.setattr(settings.governance, "admin_approval_expiry_hours", 24)
    monkeypatch.setattr(settings.governance, "ledger_append_max_attempts", 5)
