"""Escalation config loading, webhook sink, circuit breaker and metrics payload."""

from datetime import timedelta

import httpx
import pytest

from assignment.domain import NotificationRecord, PhaseReport, TickReport
from assignment.infrastructure import CircuitBreaker, EscalationConfigManager, WebhookNotificationSink
from config import NotificationType, StaffRole
from core import ConfigurationException, NotificationDeliveryException
from shared.infrastructure.grafana import GrafanaOTLPExporter

from conftest import NOW

VALID_CONFIG = """
escalation_levels:
  - level: 1
    window_minutes: 5
    notify_role: field_staff
  - level: 3
    window_minutes: 20
    notify_role: ops_supervisor
crisis_window_minutes: 3
"""


class TestEscalationConfigManager:
    def test_load_valid_file(self, tmp_path):
        path = tmp_path / "escalation.yaml"
        path.write_text(VALID_CONFIG)

        policy = EscalationConfigManager().load(path)

        assert policy.window_for(1) == timedelta(minutes=5)
        assert policy.audience_for(3) == StaffRole.OPS_SUPERVISOR
        assert policy.window_for(4) == timedelta(minutes=30)
        assert policy.crisis_window == timedelta(minutes=3)

    def test_missing_file_uses_defaults(self, tmp_path):
        policy = EscalationConfigManager().load(tmp_path / "absent.yaml")
        assert policy.window_for(5) == timedelta(minutes=60)

    @pytest.mark.parametrize("content", [
        "escalation_levels:\n  - level: 9\n    window_minutes: 5\n    notify_role: admin\n",
        "escalation_levels:\n  - level: 1\n    window_minutes: 0\n    notify_role: admin\n",
        "escalation_levels:\n  - level: 1\n    window_minutes: 5\n    notify_role: janitor\n",
        "- just\n- a list\n",
        "escalation_levels: [unclosed\n",
    ])
    def test_invalid_file_rejected_at_startup(self, tmp_path, content):
        path = tmp_path / "escalation.yaml"
        path.write_text(content)

        with pytest.raises(ConfigurationException):
            EscalationConfigManager().load(path)

    def test_invalid_reload_keeps_previous_policy(self, tmp_path):
        path = tmp_path / "escalation.yaml"
        path.write_text(VALID_CONFIG)
        manager = EscalationConfigManager()
        manager.load(path)

        path.write_text("crisis_window_minutes: -1\n")

        assert manager.reload() is False
        assert manager.get_config().crisis_window == timedelta(minutes=3)

    def test_valid_reload_replaces_policy(self, tmp_path):
        path = tmp_path / "escalation.yaml"
        path.write_text(VALID_CONFIG)
        manager = EscalationConfigManager()
        manager.load(path)

        path.write_text("crisis_window_minutes: 7\n")

        assert manager.reload() is True
        assert manager.get_config().crisis_window == timedelta(minutes=7)
        assert manager.get_config().window_for(1) == timedelta(minutes=10)


class TestCircuitBreaker:
    def test_opens_after_threshold_and_recovers(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=lambda: now[0])

        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert not breaker.allow_request()

        now[0] = 31.0
        assert breaker.state == "half_open"
        assert breaker.allow_request()

        breaker.record_failure()
        assert breaker.state == "open"

        now[0] = 62.0
        breaker.record_success()
        assert breaker.state == "closed"


def _record() -> NotificationRecord:
    return NotificationRecord(
        recipient_id="S",
        title="Ticket escalated to L3",
        message="Leak: SLA breach - escalating to L3",
        type=NotificationType.ESCALATION,
        created_at=NOW,
        action_url="/staff/maintenance/requests/t-1",
        metadata={"ticket_id": "t-1"},
    )


class TestWebhookNotificationSink:
    async def test_posts_records(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookNotificationSink("https://hooks.test/notify", http_client=client)

        await sink.send([_record()])
        await sink.close()

        assert len(seen) == 1
        body = seen[0].read().decode()
        assert '"user_id":"S"' in body.replace(" ", "")
        assert "/staff/maintenance/requests/t-1" in body

    async def test_retries_then_raises(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        breaker = CircuitBreaker(failure_threshold=1)
        sink = WebhookNotificationSink(
            "https://hooks.test/notify",
            max_retries=3,
            backoff_base=0,
            circuit_breaker=breaker,
            http_client=client,
        )

        with pytest.raises(NotificationDeliveryException):
            await sink.send([_record()])
        assert len(attempts) == 3

        with pytest.raises(NotificationDeliveryException):
            await sink.send([_record()])
        assert len(attempts) == 3
        await sink.close()


class TestGrafanaPayload:
    def test_tick_payload_has_phase_gauges(self):
        exporter = GrafanaOTLPExporter(
            host="https://otlp.test", api_key="key", instance_id="42"
        )
        report = TickReport(tick_id="tick-1", started_at=NOW, finished_at=NOW + timedelta(seconds=1))
        phase = PhaseReport(name="escalate_sla_breaches", selected=3, changed=2, stale=1)
        report.phases.append(phase)

        payload = exporter.build_tick_payload(report.to_dict())

        metrics = payload["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]
        by_name = {metric["name"]: metric for metric in metrics}
        assert by_name["assignment_tick_duration_ms"]["gauge"]["dataPoints"][0]["asDouble"] == 1000.0
        changed = by_name["assignment_phase_changed"]["gauge"]["dataPoints"][0]
        assert changed["asInt"] == 2
        assert {"key": "phase", "value": {"stringValue": "escalate_sla_breaches"}} in changed["attributes"]

    async def test_disabled_exporter_skips(self):
        exporter = GrafanaOTLPExporter(host=None, api_key=None, instance_id=None)
        report = TickReport(tick_id="tick-1", started_at=NOW, finished_at=NOW)
        assert await exporter.export_tick_metrics(report.to_dict()) is False
