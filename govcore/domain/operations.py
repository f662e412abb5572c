"""Domain operations the governance core executes, and the closed dispatch table.

The core never mutates users or applications itself. It calls a
`DomainOperations` collaborator, and only through `execute_action`, which
maps the four governed action symbols onto concrete operations.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from govcore.errors import ValidationError
from govcore.models.enums import BULK_ACTIONS, GovernedAction


class DomainOperations(Protocol):
    """Backend that owns the users/applications data."""

    async def delete_user(self, user_id: str) -> None: ...

    async def anonymize_user(self, user_id: str) -> None: ...

    async def reject_applications(self, application_ids: list[str]) -> None: ...

    async def suspend_applications(self, application_ids: list[str]) -> None: ...


def target_ids_of(payload: dict[str, Any]) -> list[str]:
    ids = payload.get("target_ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("payload.target_ids must be a non-empty list")
    return [str(i) for i in ids]


def _dispatch_table(ops: DomainOperations) -> dict[str, Callable[[str | None, dict[str, Any]], Awaitable[None]]]:
    async def user_delete(target_id: str | None, _payload: dict[str, Any]) -> None:
        await ops.delete_user(_require_target(target_id))

    async def user_anonymize(target_id: str | None, _payload: dict[str, Any]) -> None:
        await ops.anonymize_user(_require_target(target_id))

    async def bulk_reject(_target_id: str | None, payload: dict[str, Any]) -> None:
        await ops.reject_applications(target_ids_of(payload))

    async def bulk_suspend(_target_id: str | None, payload: dict[str, Any]) -> None:
        await ops.suspend_applications(target_ids_of(payload))

    return {
        GovernedAction.USER_DELETE.value: user_delete,
        GovernedAction.USER_ANONYMIZE.value: user_anonymize,
        GovernedAction.BULK_REJECT.value: bulk_reject,
        GovernedAction.BULK_SUSPEND.value: bulk_suspend,
    }


def _require_target(target_id: str | None) -> str:
    if not target_id:
        raise ValidationError("target_id required for this action")
    return target_id


def validate_action(action: str, target_id: str | None, payload: dict[str, Any]) -> None:
    """Reject unknown actions and malformed arguments before anything is recorded."""
    if action not in {a.value for a in GovernedAction}:
        raise ValidationError(f"unknown action: {action}")
    if action in BULK_ACTIONS:
        target_ids_of(payload)
    else:
        _require_target(target_id)


async def execute_action(
    ops: DomainOperations,
    action: str,
    target_id: str | None,
    payload: dict[str, Any],
) -> None:
    """Run one governed action against the domain backend.

    Raises:
        ValidationError: action is not one of the governed actions.
        DomainOperationError: the backend refused or failed.
    """
    handler = _dispatch_table(ops).get(action)
    if handler is None:
        raise ValidationError(f"unknown action: {action}")
    await handler(target_id, payload)
