"""
Tests: rules file manager, webhook notifier, circuit breaker and dispatcher.

Covers:
    - YAML load, missing file defaults, invalid file -> ConfigurationException
    - Unknown top-level keys (e.g. a separate escalation table) are rejected
    - Failed reload keeps the previous snapshot
    - Notifier: success, retry then success, exhaustion -> NotifierException,
      no webhook configured, open circuit
    - Dispatcher: failures never reach the caller, drain waits for delivery
    - Sweep scheduler start/stop
"""

import asyncio

import httpx
import pytest

from rma_workflow.config import EventType, Priority, Stage
from rma_workflow.core import ConfigurationException, NotifierException
from rma_workflow.rma.application import INotifier, NotificationDispatcher
from rma_workflow.rma.domain import WorkflowEvent
from rma_workflow.rma.infrastructure import (
    CircuitBreaker, RulesConfigManager, SweepScheduler, WebhookNotifier
)

from conftest import T0, RecordingNotifier

VALID_RULES = """
sla_hours:
  Under Review:
    Medium: 48
assignment_rules:
  - product_category: Projector
    assignee: projector-team@cds.example
default_assignee: rma-desk@cds.example
"""


def _event(**overrides) -> WorkflowEvent:
    data = {
        "event_type": EventType.ESCALATION,
        "case_id": "case-1",
        "rma_number": "RMA-2026-001",
        "occurred_at": T0,
        "actor": "system",
        "message": "SLA breached",
        "stage": Stage.UNDER_REVIEW,
        "priority": Priority.HIGH,
        "previous_priority": Priority.MEDIUM,
        "recipient": "senior@cds.example",
    }
    data.update(overrides)
    return WorkflowEvent(**data)


def _notifier(handler, **kwargs) -> WebhookNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(
        "https://gateway.example/notify",
        backoff_base=0,
        http_client=client,
        **kwargs
    )


# ── Rules file ───────────────────────────────────────────────────────────────


class TestRulesConfigManager:

    def test_load_valid_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_RULES)

        manager = RulesConfigManager()
        rules = manager.load(path)

        assert rules.sla_hours["Under Review"]["Medium"] == 48
        assert manager.get_rules().default_assignee == "rma-desk@cds.example"

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = RulesConfigManager()
        rules = manager.load(tmp_path / "absent.yaml")
        assert rules.default_sla_hours["Medium"] == 72
        assert rules.assignment_rules == []

    def test_invalid_initial_file_raises(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("sla_hours:\n  Under Review:\n    Medium: -5\n")
        with pytest.raises(ConfigurationException):
            RulesConfigManager().load(path)

    def test_unknown_rules_key_raises(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("escalation:\n  Under Review: 48\n")
        with pytest.raises(ConfigurationException) as exc:
            RulesConfigManager().load(path)
        assert exc.value.details["errors"]

    def test_non_mapping_file_raises(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationException):
            RulesConfigManager().load(path)

    def test_failed_reload_keeps_previous_snapshot(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_RULES)
        manager = RulesConfigManager()
        before = manager.load(path)

        path.write_text("sla_hours:\n  Nowhere:\n    Medium: 1\n")
        assert manager.reload() is False
        assert manager.get_rules() is before

    def test_reload_swaps_snapshot(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_RULES)
        manager = RulesConfigManager()
        manager.load(path)

        path.write_text(VALID_RULES.replace("rma-desk@cds.example", "new-desk@cds.example"))
        assert manager.reload() is True
        assert manager.get_rules().default_assignee == "new-desk@cds.example"

    def test_get_rules_before_load(self):
        with pytest.raises(ConfigurationException):
            RulesConfigManager().get_rules()


# ── Notifier ─────────────────────────────────────────────────────────────────


class TestWebhookNotifier:

    def test_posts_event_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202)

        asyncio.run(_notifier(handler).send(_event()))

        assert len(seen) == 1
        body = seen[0].read().decode()
        assert '"rma_number":"RMA-2026-001"' in body.replace(" ", "")
        assert '"recipient":"senior@cds.example"' in body.replace(" ", "")

    def test_retries_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503 if len(calls) < 3 else 200)

        asyncio.run(_notifier(handler, max_retries=3).send(_event()))
        assert len(calls) == 3

    def test_exhausted_retries_raise(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("gateway down")

        with pytest.raises(NotifierException):
            asyncio.run(_notifier(handler, max_retries=2).send(_event()))
        assert len(calls) == 2

    def test_open_circuit_short_circuits(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=600)
        notifier = _notifier(handler, max_retries=1, circuit_breaker=breaker)

        async def scenario():
            with pytest.raises(NotifierException):
                await notifier.send(_event())
            with pytest.raises(NotifierException):
                await notifier.send(_event())

        asyncio.run(scenario())
        assert len(calls) == 1
        assert breaker.state == "open"

    def test_no_webhook_is_a_no_op(self):
        asyncio.run(WebhookNotifier(None).send(_event()))

    def test_payload_subject(self):
        payload = WebhookNotifier.build_payload(_event(event_type=EventType.STATUS_CHANGE))
        assert payload["subject"] == "[RMA-2026-001] status change"
        assert payload["previous_priority"] == "Medium"


# ── Dispatcher ───────────────────────────────────────────────────────────────


class TestNotificationDispatcher:

    def test_failures_are_swallowed_and_logged(self, caplog):
        class BrokenNotifier(INotifier):
            async def send(self, event):
                raise NotifierException("gateway down")

        async def scenario():
            dispatcher = NotificationDispatcher(BrokenNotifier())
            scheduled = dispatcher.dispatch([_event(), _event()])
            await dispatcher.drain()
            return scheduled, dispatcher.pending

        scheduled, pending = asyncio.run(scenario())

        assert scheduled == 2
        assert pending == 0
        assert "Notification delivery failed" in caplog.text

    def test_drain_waits_for_delivery(self):
        notifier = RecordingNotifier()

        async def scenario():
            dispatcher = NotificationDispatcher(notifier)
            dispatcher.dispatch([_event(), _event(event_type=EventType.ASSIGNMENT)])
            await dispatcher.drain()

        asyncio.run(scenario())
        assert notifier.types() == ["escalation", "assignment"]

    def test_without_notifier_nothing_is_scheduled(self):
        async def scenario():
            return NotificationDispatcher(None).dispatch([_event()])

        assert asyncio.run(scenario()) == 0


# ── Scheduler ────────────────────────────────────────────────────────────────


class TestSweepScheduler:

    def test_start_and_stop(self):
        async def job():
            return None

        async def scenario():
            scheduler = SweepScheduler(interval_seconds=60)
            await scheduler.start(job)
            started = scheduler.is_running
            await scheduler.start(job)
            await scheduler.stop()
            return started, scheduler.is_running

        started, running = asyncio.run(scenario())
        assert started is True
        assert running is False

    def test_stop_without_start_is_a_no_op(self):
        scheduler = SweepScheduler()
        asyncio.run(scheduler.stop())
        assert not scheduler.is_running
