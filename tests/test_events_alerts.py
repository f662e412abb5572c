"""Tests for the governance event bus and the alert engine."""

from __future__ import annotations

import json

import httpx
import pytest

from govcore.admin.alerts import ALERT_RULES, AlertEngine, AlertRule, webhook_sender
from govcore.admin.events import EventBus
from govcore.schemas.events import EventType, SystemEvent


def _event(event_type: EventType, actor_id: str | None = "admin-a", **data) -> SystemEvent:
    return SystemEvent(event_type=event_type, actor_id=actor_id, data=data)


# ── Event bus ────────────────────────────────────────────────────────


class TestEventBus:
    @pytest.mark.asyncio()
    async def test_inline_dispatch_without_worker(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.subscribe(handler)
        await bus.emit(_event(EventType.ACTION_EXECUTED))
        assert seen == [EventType.ACTION_EXECUTED]

    @pytest.mark.asyncio()
    async def test_typed_subscription(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.subscribe(handler, [EventType.CHAIN_BROKEN])
        await bus.emit(_event(EventType.ACTION_EXECUTED))
        await bus.emit(_event(EventType.CHAIN_BROKEN))
        assert seen == [EventType.CHAIN_BROKEN]

    @pytest.mark.asyncio()
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            seen.append(event)

        bus.subscribe(broken)
        bus.subscribe(healthy)
        await bus.emit(_event(EventType.ACTION_DENIED))
        assert len(seen) == 1

    @pytest.mark.asyncio()
    async def test_worker_drains_on_stop(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.data["n"])

        bus.subscribe(handler)
        await bus.start()
        assert bus.running
        for n in range(3):
            await bus.emit(_event(EventType.ACTION_EXECUTED, n=n))
        await bus.stop()

        assert seen == [0, 1, 2]
        assert not bus.running

    @pytest.mark.asyncio()
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        bus.subscribe(handler, [EventType.SESSION_ANOMALY])
        bus.unsubscribe(handler)
        await bus.emit(_event(EventType.SESSION_ANOMALY))
        assert seen == []


# ── Alert engine ─────────────────────────────────────────────────────


class _Outbox:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def __call__(self, name, level, message):
        self.sent.append((name, level, message))


class TestAlertEngine:
    @pytest.mark.asyncio()
    async def test_no_send_fn_is_noop(self):
        await AlertEngine().on_event(_event(EventType.CHAIN_BROKEN, broken_at_seq=3, reason="x"))

    @pytest.mark.asyncio()
    async def test_chain_broken_alert(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.CHAIN_BROKEN, None, broken_at_seq=7, reason="row_hash mismatch"))

        assert outbox.sent == [
            ("Audit chain broken", "critical", "Audit chain verification failed at seq 7: row_hash mismatch"),
        ]

    @pytest.mark.asyncio()
    async def test_rate_limit_denial_only(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.ACTION_DENIED, action="user_delete", error="approver cannot be the same as requester"))
        await engine.on_event(_event(EventType.ACTION_DENIED, action="user_delete", error="rate limit exceeded: max 5 per 1 hour(s)"))

        assert outbox.sent == [("Rate limit denial", "warning", "Destructive rate limit hit by admin-a: user_delete")]

    @pytest.mark.asyncio()
    async def test_info_escalation_not_alerted(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.ESCALATION_OPENED, None, metric="overdue_approvals", value=1.0, severity="info"))
        await engine.on_event(_event(EventType.ESCALATION_OPENED, None, metric="destructive_velocity", value=5.0, severity="warning"))

        assert [m for _, _, m in outbox.sent] == ["Escalation destructive_velocity = 5.0 (warning)"]

    @pytest.mark.asyncio()
    async def test_escalation_level_follows_severity(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.ESCALATION_OPENED, None, metric="chain_integrity", value=1.0, severity="critical"))

        assert [(name, level) for name, level, _ in outbox.sent] == [("Escalation opened", "critical")]

    @pytest.mark.asyncio()
    async def test_worsened_escalation_alerts_at_new_level(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(
            EventType.ESCALATION_RAISED,
            None,
            metric="destructive_velocity",
            value=10.0,
            severity="critical",
            previous_severity="warning",
        ))

        assert outbox.sent == [
            ("Escalation worsened", "critical", "Escalation destructive_velocity = 10.0 (warning -> critical)")
        ]

    @pytest.mark.asyncio()
    async def test_min_level_drops_quieter_alerts(self):
        engine = AlertEngine(min_level="warning")
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.APPROVAL_REQUESTED, action="user_delete", target_id="u1", request_id="r1"))
        await engine.on_event(_event(EventType.SESSION_ANOMALY, None, admin_id="admin-a", ip="198.51.100.4"))

        assert outbox.sent == [("Session from new IP", "warning", "Admin admin-a signed in from new IP 198.51.100.4")]

    @pytest.mark.asyncio()
    async def test_missing_template_data_falls_back(self):
        engine = AlertEngine()
        outbox = _Outbox()
        engine.set_send_fn(outbox)

        await engine.on_event(_event(EventType.APPROVAL_REQUESTED, action="user_delete"))

        (name, level, message) = outbox.sent[0]
        assert name == "Approval requested"
        assert message.startswith("Approval requested (partial data:")

    @pytest.mark.asyncio()
    async def test_failing_condition_and_delivery_are_swallowed(self):
        def explode(_event):
            raise KeyError("nope")

        rules = [
            AlertRule(name="bad", event_types=[EventType.SYSTEM_ERROR], condition=explode, template="x", level="info"),
            AlertRule(name="ok", event_types=[EventType.SYSTEM_ERROR], condition=lambda _: True, template="y", level="info"),
        ]
        engine = AlertEngine(rules)

        async def failing_send(name, level, message):
            raise httpx.ConnectError("down")

        engine.set_send_fn(failing_send)
        await engine.on_event(_event(EventType.SYSTEM_ERROR))

    def test_watched_types(self):
        watched = set(AlertEngine().watched_types)
        expected = {t for rule in ALERT_RULES for t in rule.event_types}
        assert watched == expected
        assert EventType.SYSTEM_STARTUP not in watched


class TestWebhookSender:
    @pytest.mark.asyncio()
    async def test_posts_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append((str(request.url), json.loads(request.content)))
            return httpx.Response(204)

        send = webhook_sender("https://hooks.test/governance", transport=httpx.MockTransport(handler))
        await send("Audit chain broken", "critical", "chain broken at seq 4")

        assert received == [
            ("https://hooks.test/governance", {"alert": "Audit chain broken", "level": "critical", "text": "chain broken at seq 4"}),
        ]

    @pytest.mark.asyncio()
    async def test_http_error_raises(self):
        send = webhook_sender("https://hooks.test/x", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            await send("n", "info", "m")
