import json
from pathlib import Path

import httpx
import pytest
import yaml
from watchdog.events import FileModifiedEvent, FileMovedEvent

from config import AlertType, SLAType
from core import ConfigurationException
from sla.domain import SLAAlert
from sla.infrastructure import (
    CircuitBreaker,
    CircuitState,
    ConfigFileHandler,
    SLAConfigManager,
    SLAScheduler,
    SlackClient,
)

from conftest import SLA_CONFIG_DATA, utc

REPO_CONFIG = Path(__file__).resolve().parent.parent / "sla_config.yaml"


def write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


@pytest.fixture
def config_file(tmp_path) -> Path:
    return write_config(tmp_path / "sla_config.yaml", SLA_CONFIG_DATA)


class TestSLAConfigManager:

    def test_shipped_config_is_valid(self):
        manager = SLAConfigManager(strict_calendars=True)
        snapshot = manager.load(REPO_CONFIG)
        assert snapshot.summary()["invalid_calendars"] == []
        assert snapshot.calendars

    def test_load(self, config_file):
        manager = SLAConfigManager()
        snapshot = manager.load(config_file)

        assert snapshot.summary() == {"calendars": 2, "policies": 3, "invalid_calendars": []}
        assert manager.config.default_calendar_id == "office"
        assert manager.get_snapshot() is snapshot

    def test_not_loaded(self):
        with pytest.raises(RuntimeError):
            SLAConfigManager().get_snapshot()

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = SLAConfigManager()
        snapshot = manager.load(tmp_path / "absent.yaml")

        assert snapshot.calendars == {}
        manager.start_watching()
        manager.stop_watching()

    def test_invalid_file_fails_load(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("policies: [unclosed")
        with pytest.raises(ConfigurationException):
            SLAConfigManager().load(path)

    def test_reload_picks_up_changes(self, config_file):
        manager = SLAConfigManager()
        manager.load(config_file)

        policies = SLA_CONFIG_DATA["policies"] + [{
            "id": "p2", "priority": 2, "response_target_minutes": 30, "resolution_target_minutes": 720,
        }]
        write_config(config_file, dict(SLA_CONFIG_DATA, policies=policies))

        assert manager.reload()
        assert manager.get_snapshot().select_policy(2).id == "p2"

    @pytest.mark.parametrize("content", [
        "calendars: [unclosed",
        "default_calendar_id: moon\n",
    ])
    def test_bad_reload_keeps_previous_snapshot(self, config_file, content):
        manager = SLAConfigManager()
        before = manager.load(config_file)

        config_file.write_text(content)

        assert not manager.reload()
        assert manager.get_snapshot() is before

    def test_strict_reload_rejects_overlapping_hours(self, config_file):
        manager = SLAConfigManager(strict_calendars=True)
        before = manager.load(config_file)

        calendar = dict(SLA_CONFIG_DATA["calendars"][0], business_hours=[
            {"day": 1, "start": "09:00", "end": "13:00"},
            {"day": 1, "start": "12:00", "end": "17:00"},
        ])
        write_config(config_file, dict(SLA_CONFIG_DATA, calendars=[calendar, SLA_CONFIG_DATA["calendars"][1]]))

        assert not manager.reload()
        assert manager.get_snapshot() is before

    def test_file_events_trigger_reload(self, config_file):
        manager = SLAConfigManager()
        manager.load(config_file)
        handler = ConfigFileHandler(manager, config_file)

        write_config(config_file, dict(SLA_CONFIG_DATA, default_calendar_id="new-york"))
        handler.on_modified(FileModifiedEvent(str(config_file)))
        assert manager.config.default_calendar_id == "new-york"

        write_config(config_file, SLA_CONFIG_DATA)
        handler.on_moved(FileMovedEvent(str(config_file) + ".tmp", str(config_file)))
        assert manager.config.default_calendar_id == "office"

    def test_events_for_other_files_are_ignored(self, config_file, tmp_path):
        manager = SLAConfigManager()
        before = manager.load(config_file)
        handler = ConfigFileHandler(manager, config_file)

        handler.on_modified(FileModifiedEvent(str(tmp_path / "other.yaml")))
        assert manager.get_snapshot() is before


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=FakeClock())
        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()

        clock.now = 31
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now = 31
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN


def breach_alert(channels=("#helpdesk-sla", "#helpdesk-leads")) -> SLAAlert:
    return SLAAlert(
        id="a-1",
        ticket_id="T-1",
        sla_type=SLAType.RESPONSE,
        alert_type=AlertType.BREACH,
        triggered_at=utc(2024, 1, 15, 10),
        elapsed_ms=4_500_000,
        target_ms=3_600_000,
        policy_id="p3",
        escalation_level=2,
        channels=list(channels),
    )


class TestSlackClient:

    def slack(self, handler, **kwargs) -> SlackClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return SlackClient(
            webhook_url="https://hooks.slack.test/services/x",
            default_channel="#fallback",
            ticket_url_template="https://helpdesk.test/tickets/{ticket_id}",
            http_client=client,
            retry_base_delay=0,
            **kwargs,
        )

    async def test_posts_block_kit_message(self):
        payloads = []

        def handler(request: httpx.Request) -> httpx.Response:
            payloads.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        slack = self.slack(handler)
        assert await slack.send_alert(breach_alert())

        message = payloads[0]
        assert message["channel"] == "#helpdesk-sla"
        assert message["text"] == "Response SLA breached for ticket T-1: 75 of 60 business minutes used"
        assert "https://helpdesk.test/tickets/T-1" in json.dumps(message["blocks"])

    def test_default_channel(self):
        slack = SlackClient(webhook_url="", default_channel="#fallback")
        assert slack.build_message(breach_alert(channels=()))["channel"] == "#fallback"

    async def test_no_webhook_configured(self):
        slack = SlackClient(webhook_url="")
        assert not await slack.send_alert(breach_alert())

    async def test_retries_then_opens_breaker(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        slack = self.slack(handler, circuit_breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=60))
        assert not await slack.send_alert(breach_alert())
        assert len(calls) == 3
        assert slack.circuit_breaker.state == CircuitState.OPEN

        assert not await slack.send_alert(breach_alert())
        assert len(calls) == 3

    async def test_transport_errors_are_contained(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        slack = self.slack(handler)
        assert not await slack.send_alert(breach_alert(), max_retries=2)

    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        slack = SlackClient(webhook_url="https://hooks.slack.test/x", http_client=client)
        await slack.close()
        assert not client.is_closed
        await client.aclose()


class TestSLAScheduler:

    async def test_start_and_stop(self):
        runs = []

        async def job():
            runs.append(1)

        scheduler = SLAScheduler()
        scheduler.add_job("sla_sweep", job, 3600)
        await scheduler.start()
        assert scheduler.is_running

        await scheduler.start()
        await scheduler.stop()
        assert not scheduler.is_running
