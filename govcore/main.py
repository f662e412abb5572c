"""FastAPI application entry point: wires everything together.

Usage:
    python -m govcore.main

Starts the admin governance API. Unless ESCALATION_RUN_EMBEDDED is false,
the escalation engine ticks in the background of the same process.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from govcore.admin.api import register_exception_handlers, router
from govcore.admin.events import emit, start_event_system, stop_event_system, subscribe
from govcore.config import settings
from govcore.db.engine import async_session_factory, close_db, init_db
from govcore.schemas.events import EventType, SystemEvent
from govcore.security.escalations import escalation_engine

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting governance core (env=%s)", settings.environment)

    # 1. Database
    await init_db()
    logger.info("Database initialized")

    # 2. Alerts (only if a webhook is configured)
    if settings.alerts.alert_webhook_url:
        from govcore.admin.alerts import alert_engine, webhook_sender

        alert_engine.min_level = settings.alerts.alert_min_level
        alert_engine.set_send_fn(
            webhook_sender(settings.alerts.alert_webhook_url, timeout=settings.alerts.alert_webhook_timeout_seconds)
        )
        subscribe(alert_engine.on_event, event_types=alert_engine.watched_types)
        logger.info("Alert engine registered")
    else:
        logger.warning("ALERT_WEBHOOK_URL not set; governance alerts disabled")

    # 3. Event system
    await start_event_system()
    await emit(SystemEvent(event_type=EventType.SYSTEM_STARTUP, source_module="main"))

    # 4. Escalation engine
    if settings.escalation.escalation_run_embedded:
        escalation_engine.start_periodic(async_session_factory, settings.escalation.escalation_interval_seconds)
    else:
        logger.info("Embedded escalation engine disabled; run `python -m govcore.cli run-escalations`")

    if not settings.security.admin_gateway_token:
        logger.warning("ADMIN_GATEWAY_TOKEN not set; admin API will refuse every request")

    try:
        yield
    finally:
        logger.info("Shutting down governance core...")

        await escalation_engine.stop_periodic()

        await emit(SystemEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
        await stop_event_system()
        await close_db()

        logger.info("Governance core shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Governance Core API",
    description="Audited, rate-limited, 4-eyes administration of destructive actions",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
register_exception_handlers(app)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "approvals": "enabled" if settings.governance.approval_enabled else "disabled",
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "govcore.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
