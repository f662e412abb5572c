"""Idempotency keys for governed endpoints.

A client that retries a governed request with the same `Idempotency-Key`
gets the first response back instead of a second attempt. Keys are scoped
to (admin, action).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from govcore.models.idempotency import AdminIdempotencyKey

logger = logging.getLogger(__name__)

_KEY_MAX_LENGTH = 200


@dataclass
class StoredResponse:
    status_code: int
    body: dict[str, Any]


def normalize_key(raw: str | None) -> str | None:
    if raw is None:
        return None
    key = raw.strip()[:_KEY_MAX_LENGTH]
    return key or None


async def get_stored_response(db: AsyncSession, key: str, admin_id: str, action: str) -> StoredResponse | None:
    row = await db.scalar(
        select(AdminIdempotencyKey).where(
            AdminIdempotencyKey.idempotency_key == key,
            AdminIdempotencyKey.admin_id == admin_id,
            AdminIdempotencyKey.action == action,
        )
    )
    if row is None:
        return None
    return StoredResponse(status_code=row.response_status, body=json.loads(row.response_body))


async def store_response(
    db: AsyncSession,
    key: str,
    admin_id: str,
    action: str,
    status_code: int,
    body: dict[str, Any],
) -> None:
    """Remember the first response for `key`. A concurrent duplicate keeps the earlier one."""
    db.add(AdminIdempotencyKey(
        idempotency_key=key,
        admin_id=admin_id,
        action=action,
        response_status=status_code,
        response_body=json.dumps(body, default=str),
    ))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Idempotency key already stored: admin=%s action=%s", admin_id, action)
