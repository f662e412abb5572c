"""Alert engine: turns governance events into operator notifications.

Rules decide which events alert, at which level and with what text.
Delivery is delegated to an injected send function; `webhook_sender` posts
each alert as JSON to ALERT_WEBHOOK_URL. Alerts below the engine's minimum
level are dropped before delivery.

Never raises: failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import httpx

from govcore.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

SendFn = Callable[[str, str, str], Coroutine[Any, Any, None]]

LEVELS = ("info", "warning", "critical")


@dataclass(frozen=True)
class AlertRule:
    """Maps matching events to one notification.

    `level` is either fixed or derived from the event, e.g. an escalation's
    own severity.
    """

    name: str
    event_types: list[EventType]
    condition: Callable[[SystemEvent], bool]
    template: str  # str.format over event.data plus actor_id
    level: str | Callable[[SystemEvent], str]

    def level_for(self, event: SystemEvent) -> str:
        level = self.level(event) if callable(self.level) else self.level
        return level if level in LEVELS else "critical"


def _always(_event: SystemEvent) -> bool:
    return True


ALERT_RULES: list[AlertRule] = [
    AlertRule(
        name="Approval requested",
        event_types=[EventType.APPROVAL_REQUESTED],
        condition=_always,
        template="Approval needed: {action} on {target_id} (request {request_id}, by {actor_id})",
        level="info",
    ),
    AlertRule(
        name="Approved action failed",
        event_types=[EventType.APPROVAL_EXECUTION_FAILED],
        condition=_always,
        template="Approved {action} on {target_id} failed: {error} (request {request_id})",
        level="critical",
    ),
    AlertRule(
        name="Rate limit denial",
        event_types=[EventType.ACTION_DENIED],
        condition=lambda e: "rate limit" in str(e.data.get("error", "")),
        template="Destructive rate limit hit by {actor_id}: {action}",
        level="warning",
    ),
    AlertRule(
        name="Escalation opened",
        event_types=[EventType.ESCALATION_OPENED],
        condition=lambda e: e.data.get("severity") in ("warning", "critical"),
        template="Escalation {metric} = {value} ({severity})",
        level=lambda e: str(e.data.get("severity")),
    ),
    AlertRule(
        name="Escalation worsened",
        event_types=[EventType.ESCALATION_RAISED],
        condition=_always,
        template="Escalation {metric} = {value} ({previous_severity} -> {severity})",
        level=lambda e: str(e.data.get("severity")),
    ),
    AlertRule(
        name="Audit chain broken",
        event_types=[EventType.CHAIN_BROKEN],
        condition=_always,
        template="Audit chain verification failed at seq {broken_at_seq}: {reason}",
        level="critical",
    ),
    AlertRule(
        name="Session from new IP",
        event_types=[EventType.SESSION_ANOMALY],
        condition=_always,
        template="Admin {admin_id} signed in from new IP {ip}",
        level="warning",
    ),
]


class AlertEngine:
    """Evaluates events against alert rules and pushes matching alerts."""

    def __init__(self, rules: list[AlertRule] | None = None, min_level: str = "info") -> None:
        self._rules = rules if rules is not None else ALERT_RULES
        self._send_fn: SendFn | None = None
        self.min_level = min_level

    @property
    def watched_types(self) -> list[EventType]:
        """Event types any rule matches, for a targeted subscription."""
        return sorted({t for rule in self._rules for t in rule.event_types}, key=lambda t: t.value)

    def set_send_fn(self, fn: SendFn) -> None:
        """Inject the delivery function: `await fn(rule_name, level, message)`."""
        self._send_fn = fn

    def _render(self, rule: AlertRule, event: SystemEvent) -> str:
        data: dict[str, Any] = {**event.data}
        if event.actor_id is not None:
            data.setdefault("actor_id", event.actor_id)
        try:
            return rule.template.format(**data)
        except (KeyError, IndexError):
            return f"{rule.name} (partial data: {data})"

    async def on_event(self, event: SystemEvent) -> None:
        """Evaluate `event` against every rule and deliver what matches.

        Never raises: failures are logged and swallowed.
        """
        if self._send_fn is None:
            return

        floor = LEVELS.index(self.min_level)
        for rule in self._rules:
            if event.event_type not in rule.event_types:
                continue
            try:
                if not rule.condition(event):
                    continue
                level = rule.level_for(event)
            except Exception:
                logger.exception("Alert rule evaluation failed: %s", rule.name)
                continue
            if LEVELS.index(level) < floor:
                logger.debug("Alert %s below minimum level (%s < %s)", rule.name, level, self.min_level)
                continue

            try:
                await self._send_fn(rule.name, level, self._render(rule, event))
            except Exception:
                logger.exception("Failed to deliver alert: %s", rule.name)


def webhook_sender(
    url: str,
    timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SendFn:
    """Build a send function that POSTs `{"alert", "level", "text"}` to `url`."""

    async def send(name: str, level: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, json={"alert": name, "level": level, "text": message})
            response.raise_for_status()
        logger.debug("Alert delivered: %s (%s)", name, level)

    return send


# Module-level singleton
alert_engine = AlertEngine()
