"""Async httpx client for the backend that owns users and applications.

Each domain operation is a POST to an RPC endpoint on the backend:

    POST {base_url}/rpc/{name}   body: {"p_user_id": ...} | {"p_application_id": ...}
    Auth: apikey + Authorization: Bearer <service key>

Unlike read-only integrations, there is no bypass mode: a destructive call
against an unconfigured backend fails rather than pretending to succeed.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from govcore.config import settings
from govcore.errors import DomainOperationError

logger = logging.getLogger(__name__)

_RPC_DELETE_USER = "admin_delete_user"
_RPC_ANONYMIZE_USER = "admin_anonymize_user"
_RPC_REJECT_APPLICATION = "admin_reject_application"
_RPC_SUSPEND_APPLICATION = "admin_suspend_application"


class BackendDomainOperations:
    """DomainOperations implementation over the backend's RPC endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url if base_url is not None else settings.domain.domain_api_url).rstrip("/")
        self._service_key = service_key if service_key is not None else settings.domain.domain_service_key
        seconds = timeout if timeout is not None else settings.domain.domain_timeout_seconds
        self._timeout = httpx.Timeout(seconds, connect=5.0)
        self._transport = transport

    async def delete_user(self, user_id: str) -> None:
        await self._rpc(_RPC_DELETE_USER, {"p_user_id": user_id})

    async def anonymize_user(self, user_id: str) -> None:
        await self._rpc(_RPC_ANONYMIZE_USER, {"p_user_id": user_id})

    async def reject_applications(self, application_ids: list[str]) -> None:
        await self._each_application(_RPC_REJECT_APPLICATION, application_ids)

    async def suspend_applications(self, application_ids: list[str]) -> None:
        await self._each_application(_RPC_SUSPEND_APPLICATION, application_ids)

    async def _each_application(self, rpc: str, application_ids: list[str]) -> None:
        """Call `rpc` for every id; report every failure together at the end."""
        errors: list[str] = []
        missing = 0
        for app_id in application_ids:
            try:
                await self._rpc(rpc, {"p_application_id": app_id})
            except DomainOperationError as exc:
                errors.append(f"{app_id}: {exc.message}")
                missing += int(exc.not_found)
        if errors:
            err = DomainOperationError(
                f"{len(errors)} of {len(application_ids)} application(s) failed",
                not_found=missing == len(application_ids),
            )
            err.details = {"errors": errors}
            raise err

    async def _rpc(self, name: str, params: dict[str, Any]) -> None:
        if not self._service_key:
            raise DomainOperationError("domain backend not configured")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/rpc/{name}",
                    json=params,
                    headers={
                        "apikey": self._service_key,
                        "Authorization": f"Bearer {self._service_key}",
                    },
                )
                response.raise_for_status()

        except httpx.TimeoutException as exc:
            logger.warning("Domain RPC %s timed out", name)
            raise DomainOperationError("domain operation timed out") from exc

        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Domain RPC %s failed: HTTP %s", name, status)
            if status == 404:
                raise DomainOperationError("target not found", not_found=True) from exc
            raise DomainOperationError(f"domain operation failed (HTTP {status})") from exc

        except httpx.HTTPError as exc:
            logger.warning("Domain RPC %s transport error: %s", name, exc)
            raise DomainOperationError("domain backend unreachable") from exc

        logger.info("Domain RPC %s ok", name)


# Module-level singleton
domain_client = BackendDomainOperations()
