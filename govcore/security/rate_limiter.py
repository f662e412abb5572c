"""Redis fixed-window throttle for expensive admin endpoints.

This is request hygiene in front of the bulk and snapshot endpoints. It is
not the destructive-action gate: the gate's sliding-window count over the
audit ledger stays authoritative, so this throttle fails open when Redis is
unavailable.

Usage:
    from govcore.security.rate_limiter import endpoint_throttle

    await endpoint_throttle.enforce("bulk", admin_id, limit=20, window=60)
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from govcore.db.engine import redis_client
from govcore.errors import ThrottledError

logger = logging.getLogger(__name__)


class EndpointThrottle:
    """Fixed-window counter backed by Redis INCR + EXPIRE."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "govcore:throttle") -> None:
        self._redis = redis
        self._prefix = prefix

    async def check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """Count one hit against `key`.

        Returns:
            (allowed, retry_after): retry_after is seconds until the window
            resets, 0 when allowed.
        """
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, window)

            if count > limit:
                ttl = await self._redis.ttl(key)
                return False, max(ttl, 1)

            return True, 0
        except aioredis.RedisError:
            logger.exception("Throttle Redis error for key %s", key)
            return True, 0

    async def enforce(self, scope: str, admin_id: str, limit: int, window: int = 60) -> None:
        """Raise ThrottledError when `admin_id` exceeded `limit` calls to `scope`."""
        allowed, retry_after = await self.check(f"{self._prefix}:{scope}:{admin_id}", limit, window)
        if not allowed:
            logger.warning("Throttled %s for admin %s (retry in %ds)", scope, admin_id, retry_after)
            raise ThrottledError(
                f"too many {scope} requests: max {limit} per {window} seconds",
                retry_after=retry_after,
            )


# Module-level singleton
endpoint_throttle = EndpointThrottle(redis_client)
