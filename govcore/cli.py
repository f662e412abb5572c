"""CLI commands for cron and operators.

Usage:
    python -m govcore.cli verify-chain [--from-seq N] [--to-seq N]
    python -m govcore.cli run-escalations
    python -m govcore.cli snapshot
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine
from typing import Any

import click

from govcore.config import settings
from govcore.db.engine import async_session_factory, engine
from govcore.errors import GovernanceError
from govcore.schemas.governance import SYSTEM_PRINCIPAL, RequestContext
from govcore.security.audit import audit_ledger
from govcore.security.escalations import escalation_engine
from govcore.security.snapshots import snapshot_service

logger = logging.getLogger(__name__)

_CLI_CONTEXT = RequestContext(session_id="govcore-cli")


def _run(coro: Coroutine[Any, Any, int]) -> None:
    """Run `coro` on a fresh loop, dispose the engine, exit with its return code."""

    async def main() -> int:
        try:
            return await coro
        finally:
            await engine.dispose()

    code = asyncio.run(main())
    if code:
        sys.exit(code)


@click.group()
def cli() -> None:
    """Governance core CLI."""
    logging.basicConfig(level=getattr(logging, settings.log_level), stream=sys.stderr)


@cli.command("verify-chain")
@click.option("--from-seq", type=int, default=None, help="First sequence number to verify")
@click.option("--to-seq", type=int, default=None, help="Last sequence number to verify")
def verify_chain(from_seq: int | None, to_seq: int | None) -> None:
    """Re-walk the audit chain. Exits 1 on the first broken link."""

    async def run() -> int:
        async with async_session_factory() as db:
            result = await audit_ledger.verify_chain(db, from_seq=from_seq, to_seq=to_seq)
        if result.ok:
            click.echo(f"✓ Chain intact ({result.records_checked} records)")
            return 0
        click.echo(
            f"✗ Chain broken at seq {result.broken_at_seq} (id {result.broken_at_id}): {result.reason}",
            err=True,
        )
        return 1

    _run(run())


@cli.command("run-escalations")
def run_escalations() -> None:
    """Run one escalation engine tick."""

    async def run() -> int:
        async with async_session_factory() as db:
            result = await escalation_engine.run_once(db)
        click.echo(
            f"opened={result.opened} raised={result.raised} resolved={result.resolved} still_open={result.still_open}"
        )
        if result.errors:
            click.echo(f"✗ metrics failed: {result.errors}", err=True)
            return 1
        return 0

    _run(run())


@cli.command()
def snapshot() -> None:
    """Sign today's chain tip."""

    async def run() -> int:
        try:
            async with async_session_factory() as db:
                snap = await snapshot_service.create_snapshot(db, SYSTEM_PRINCIPAL, _CLI_CONTEXT)
        except GovernanceError as exc:
            click.echo(f"✗ {exc.message}", err=True)
            return 1
        click.echo(f"✓ Snapshot {snap.snapshot_date} seq={snap.seq} key={snap.key_id}")
        return 0

    _run(run())


if __name__ == "__main__":
    cli()
