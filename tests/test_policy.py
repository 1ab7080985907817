from types import SimpleNamespace

import pytest
import yaml
from pydantic import ValidationError

from config import TicketStatus, SLAType
from core import CalendarNotFoundException, InvalidCalendarConfigException, PolicyNotFoundException
from sla.application import PolicyResolver
from sla.domain import ClockEngineConfig, SLAConfig, SLAConfigSnapshot, SLAPolicy, select_policy

from conftest import SLA_CONFIG_DATA, StaticConfigProvider


def policy(policy_id, priority, team_id=None, response=30, resolution=240):
    return SLAPolicy(
        id=policy_id,
        name=policy_id,
        priority=priority,
        response_target_minutes=response,
        resolution_target_minutes=resolution,
        team_id=team_id,
    )


def config_with(**overrides) -> dict:
    data = {key: value for key, value in SLA_CONFIG_DATA.items()}
    data.update(overrides)
    return data


class TestSelectPolicy:

    def test_team_policy_wins(self):
        policies = [policy("global", 2), policy("team", 2, team_id="blue")]
        assert select_policy(policies, 2, "blue").id == "team"

    def test_falls_back_to_global(self):
        policies = [policy("global", 2), policy("team", 2, team_id="blue")]
        assert select_policy(policies, 2, "red").id == "global"
        assert select_policy(policies, 2).id == "global"

    def test_team_policy_for_other_priority_is_ignored(self):
        policies = [policy("global", 2), policy("team", 3, team_id="blue")]
        assert select_policy(policies, 2, "blue").id == "global"

    def test_no_match_raises(self):
        with pytest.raises(PolicyNotFoundException) as exc_info:
            select_policy([policy("team", 2, team_id="blue")], 2, "red")
        assert exc_info.value.priority == 2
        assert exc_info.value.team_id == "red"

    @pytest.mark.parametrize("kwargs", [
        {"priority": 0},
        {"priority": 5},
        {"response": 0},
        {"resolution": -1},
    ])
    def test_policy_validation(self, kwargs):
        args = {"policy_id": "x", "priority": 2}
        args.update(kwargs)
        with pytest.raises(ValueError):
            policy(**args)

    def test_targets_in_milliseconds(self):
        p = policy("x", 1, response=15, resolution=480)
        assert p.response_target_ms == 900_000
        assert p.target_ms(SLAType.RESOLUTION) == 28_800_000


class TestSLAConfig:

    def test_sample_config_is_valid(self, sla_config):
        snapshot = SLAConfigSnapshot.from_config(sla_config, strict=True)
        assert set(snapshot.calendars) == {"office", "new-york"}
        assert snapshot.select_policy(3, "vip").id == "p3-vip"

    def test_business_hours_accept_strings_and_seconds(self):
        config = SLAConfig(calendars=[{
            "id": "c",
            "business_hours": [
                {"day": 1, "start": "09:30", "end": "17:00"},
                {"day": 2, "start": 34200, "end": 61200},
            ],
        }])
        hours = config.calendars[0].business_hours
        assert hours[0].start == hours[1].start == 34200

    def test_unquoted_yaml_time_rejected(self):
        data = yaml.safe_load("""
calendars:
  - id: c
    business_hours:
      - day: 1
        start: "09:00"
        end: 17:00
""")
        assert data["calendars"][0]["business_hours"][0]["end"] == 1020

        with pytest.raises(ValidationError, match="unquoted HH:MM"):
            SLAConfig(**data)

    def test_midnight_offset_still_allowed(self):
        config = SLAConfig(calendars=[{
            "id": "c",
            "business_hours": [{"day": 0, "start": 0, "end": 86400}],
        }])
        assert config.calendars[0].business_hours[0].end == 86400

    def test_duplicate_policy_scope_rejected(self):
        data = config_with(policies=[
            {"id": "a", "priority": 1, "response_target_minutes": 10, "resolution_target_minutes": 60},
            {"id": "b", "priority": 1, "response_target_minutes": 20, "resolution_target_minutes": 90},
        ])
        with pytest.raises(ValidationError, match="more than one policy"):
            SLAConfig(**data)

    def test_duplicate_calendar_id_rejected(self):
        calendars = SLA_CONFIG_DATA["calendars"] + [SLA_CONFIG_DATA["calendars"][0]]
        with pytest.raises(ValidationError, match="duplicate calendar ids"):
            SLAConfig(**config_with(calendars=calendars))

    def test_unknown_calendar_reference_rejected(self):
        with pytest.raises(ValidationError, match="unknown calendar"):
            SLAConfig(**config_with(default_calendar_id="moon"))

    def test_unknown_region_reference_rejected(self):
        with pytest.raises(ValidationError, match="unknown region"):
            SLAConfig(**config_with(teams={"t": {"region_id": "atlantis"}}))

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            SLAConfig(calendars=[{"id": "c", "timezone": "Nowhere/Town"}])

    def test_calendar_resolution_order(self, sla_config):
        assert sla_config.resolve_calendar_id("support-us") == "new-york"
        assert sla_config.resolve_calendar_id("vip") == "office"
        assert sla_config.resolve_calendar_id("unknown-team") == "office"
        assert sla_config.resolve_calendar_id(None) == "office"

    def test_escalation_channels(self, sla_config):
        assert sla_config.get_channels_for_level(2) == ["#helpdesk-sla", "#helpdesk-leads"]
        assert sla_config.get_channels_for_level(9) == []


class TestSnapshot:

    def overlapping(self) -> SLAConfig:
        return SLAConfig(**config_with(calendars=[
            {
                "id": "office",
                "business_hours": [
                    {"day": 1, "start": "09:00", "end": "13:00"},
                    {"day": 1, "start": "12:00", "end": "17:00"},
                    {"day": 2, "start": "09:00", "end": "17:00"},
                ],
            },
            SLA_CONFIG_DATA["calendars"][1],
        ]))

    def test_strict_snapshot_rejects_bad_calendar(self):
        with pytest.raises(InvalidCalendarConfigException):
            SLAConfigSnapshot.from_config(self.overlapping(), strict=True)

    def test_lenient_snapshot_records_problems(self):
        snapshot = SLAConfigSnapshot.from_config(self.overlapping(), strict=False)
        assert list(snapshot.calendar_problems) == ["office"]
        assert snapshot.get_calendar("office").invalid_days
        assert snapshot.summary()["invalid_calendars"] == ["office"]

    def test_unknown_calendar(self, sla_config):
        snapshot = SLAConfigSnapshot.from_config(sla_config)
        with pytest.raises(CalendarNotFoundException):
            snapshot.get_calendar("moon")

    def test_get_policy_by_id(self, sla_config):
        snapshot = SLAConfigSnapshot.from_config(sla_config)
        assert snapshot.get_policy("p1").priority == 1
        assert snapshot.find_policy("gone") is None
        with pytest.raises(PolicyNotFoundException):
            snapshot.get_policy("gone")


class TestPolicyResolver:

    def test_resolve(self, sla_config):
        resolver = PolicyResolver(StaticConfigProvider(sla_config))
        assert resolver.resolve(3, "vip").id == "p3-vip"
        assert resolver.resolve_calendar("support-us").timezone == "America/New_York"
        with pytest.raises(PolicyNotFoundException):
            resolver.resolve(2)

    def test_list_policies_most_urgent_first(self, sla_config):
        resolver = PolicyResolver(StaticConfigProvider(sla_config))
        assert [p.id for p in resolver.list_policies()] == ["p1", "p3", "p3-vip"]


class TestClockEngineConfig:

    def settings(self, **overrides):
        values = {
            "sla_at_risk_threshold_percent": None,
            "sla_lock_timeout_seconds": 2.0,
            "sla_sweep_concurrency": 4,
            "sla_sweep_batch_size": 50,
            "sla_shard_index": 1,
            "sla_shard_count": 3,
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_from_settings_uses_yaml_pause_set(self):
        config = SLAConfig(pause_statuses=["Pending Vendor"], at_risk_threshold_percent=70)
        engine_config = ClockEngineConfig.from_settings(self.settings(), config)

        assert engine_config.pause_statuses == frozenset({TicketStatus.PENDING_VENDOR})
        assert engine_config.at_risk_threshold_percent == 70
        assert engine_config.shard_count == 3

    def test_settings_threshold_overrides_yaml(self):
        config = SLAConfig(at_risk_threshold_percent=70)
        engine_config = ClockEngineConfig.from_settings(self.settings(sla_at_risk_threshold_percent=90), config)
        assert engine_config.at_risk_threshold_percent == 90

    def test_follows_reloaded_yaml(self):
        engine_config = ClockEngineConfig.from_settings(self.settings(), SLAConfig(at_risk_threshold_percent=70))
        reloaded = engine_config.for_sla_config(
            SLAConfig(pause_statuses=["Scheduled"], at_risk_threshold_percent=60)
        )

        assert reloaded.pause_statuses == frozenset({TicketStatus.SCHEDULED})
        assert reloaded.at_risk_threshold_percent == 60
        assert reloaded.shard_count == 3

    def test_environment_threshold_survives_reload(self):
        engine_config = ClockEngineConfig.from_settings(self.settings(sla_at_risk_threshold_percent=90), SLAConfig())
        assert engine_config.for_sla_config(SLAConfig(at_risk_threshold_percent=60)).at_risk_threshold_percent == 90

    def test_explicit_config_ignores_yaml(self):
        engine_config = ClockEngineConfig(pause_statuses=frozenset({TicketStatus.PENDING_VENDOR}))
        assert engine_config.for_sla_config(SLAConfig(pause_statuses=["Scheduled"])) is engine_config

    def test_terminal_statuses_always_pause(self):
        engine_config = ClockEngineConfig(pause_statuses=frozenset())
        assert engine_config.pauses(TicketStatus.RESOLVED)
        assert engine_config.pauses(TicketStatus.CLOSED)
        assert not engine_config.pauses(TicketStatus.PENDING_INFO)

    @pytest.mark.parametrize("kwargs", [
        {"at_risk_threshold_percent": 100},
        {"lock_timeout_seconds": 0},
        {"sweep_concurrency": 0},
        {"shard_index": 2, "shard_count": 2},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ClockEngineConfig(**kwargs)
