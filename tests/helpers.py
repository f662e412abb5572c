"""Shared test doubles: a deterministic clock, principals, request contexts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from govcore.schemas.governance import Principal, RequestContext

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeClock:
    """Deterministic clock shared by every service under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


ADMIN_A = Principal(id="admin-a", email="a@example.com")
ADMIN_B = Principal(id="admin-b", email="b@example.com")
ADMIN_C = Principal(id="admin-c", email="c@example.com")
CTX_A = RequestContext(client_ip="10.0.0.1", session_id="sess-a")
CTX_B = RequestContext(client_ip="10.0.0.2", session_id="sess-b")


def make_engine():
    return create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def make_file_engine(path):
    """Engine whose transactions take SQLite's write lock up front.

    SQLite ignores FOR UPDATE; BEGIN IMMEDIATE serializes writers the way
    the chain head row lock does on PostgreSQL, and queued writers wait on
    the busy timeout instead of failing with "database is locked".
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine
