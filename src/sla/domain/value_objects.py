"""
SLA Value Objects
==================

Immutable value objects for SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.

- `SLAPolicy` and `select_policy`: which targets apply to a ticket
- `SLAConfig`: calendars and policies as loaded from YAML
- `SLAConfigSnapshot`: a validated, ready-to-use view of one `SLAConfig`
- `ClockEngineConfig`: tunables injected into the clock engine
"""

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from config import (
    SLAType, TicketStatus, VALID_PRIORITIES, TERMINAL_STATUSES,
    DEFAULT_PAUSE_STATUSES, DEFAULT_RESPONSE_MET_STATUSES,
    DEFAULT_AT_RISK_THRESHOLD_PERCENT,
)
from core.exceptions import (
    CalendarNotFoundException,
    InvalidCalendarConfigException,
    PolicyNotFoundException,
)
from sla.domain.calendar import (
    BusinessCalendar, BusinessHourWindow, Holiday,
    optional_zone, parse_clock_time,
)

# Largest integer YAML 1.1 produces for an unquoted "24:00"
MINUTES_PER_DAY = 24 * 60


# ========== Policies ==========

@dataclass(frozen=True)
class SLAPolicy:
    """
    Response/resolution targets for one priority, optionally scoped to a team.

    Targets are measured in business minutes.
    """
    id: str
    name: str
    priority: int
    response_target_minutes: int
    resolution_target_minutes: int
    update_cadence_minutes: Optional[int] = None
    team_id: Optional[str] = None

    def __post_init__(self):
        if self.priority not in VALID_PRIORITIES:
            raise ValueError(f"priority must be one of {VALID_PRIORITIES}")
        if self.response_target_minutes <= 0 or self.resolution_target_minutes <= 0:
            raise ValueError("SLA targets must be positive")

    @property
    def response_target_ms(self) -> int:
        return self.response_target_minutes * 60_000

    @property
    def resolution_target_ms(self) -> int:
        return self.resolution_target_minutes * 60_000

    def target_ms(self, sla_type: SLAType) -> int:
        if sla_type == SLAType.RESPONSE:
            return self.response_target_ms
        return self.resolution_target_ms


def select_policy(
    policies: Iterable[SLAPolicy],
    priority: int,
    team_id: Optional[str] = None
) -> SLAPolicy:
    """
    Pick the policy for a ticket.

    A policy scoped to the ticket's team wins over the global policy for the
    same priority.

    Raises:
        PolicyNotFoundException: no team or global policy for the priority
    """
    global_match: Optional[SLAPolicy] = None
    for policy in policies:
        if policy.priority != priority:
            continue
        if team_id is not None and policy.team_id == team_id:
            return policy
        if policy.team_id is None and global_match is None:
            global_match = policy

    if global_match is None:
        raise PolicyNotFoundException(priority, team_id)
    return global_match


def find_duplicate_scopes(policies: Iterable[SLAPolicy]) -> List[Tuple[int, Optional[str]]]:
    """Return every (priority, team) pair claimed by more than one policy."""
    seen = set()
    duplicates = []
    for policy in policies:
        scope = (policy.priority, policy.team_id)
        if scope in seen and scope not in duplicates:
            duplicates.append(scope)
        seen.add(scope)
    return duplicates


# ========== YAML configuration ==========

class BusinessHoursConfig(BaseModel):
    """
    One weekly window; times are "HH:MM" strings or seconds after midnight.

    Quote times in YAML: an unquoted 17:00 is read as the base-60 integer
    1020. Integer offsets between 1 and 1440 are rejected for that reason.
    """
    day: int = Field(ge=0, le=6, description="Day of week, 0 = Sunday")
    start: int = Field(description="Window start, seconds after local midnight")
    end: int = Field(description="Window end (exclusive), seconds after local midnight")

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_time_of_day(cls, v: Any) -> Any:
        """Accept "09:00" style strings as well as raw offsets."""
        if isinstance(v, str):
            return parse_clock_time(v)
        if isinstance(v, int) and not isinstance(v, bool) and 0 < v <= MINUTES_PER_DAY:
            raise ValueError(
                f"{v} looks like an unquoted HH:MM time; quote it or give seconds after midnight"
            )
        return v

    def to_window(self) -> BusinessHourWindow:
        return BusinessHourWindow(self.day, self.start, self.end)


class HolidayConfig(BaseModel):
    """A closed civil day."""
    date: date
    label: str = ""


class CalendarConfig(BaseModel):
    """A business calendar as written by administrators."""
    id: str = Field(min_length=1)
    name: str = ""
    timezone: str = Field(default="UTC", description="IANA time zone name")
    business_hours: List[BusinessHoursConfig] = Field(default_factory=list)
    holidays: List[HolidayConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if optional_zone(v) is None:
            raise ValueError(f"unknown time zone '{v}'")
        return v

    def to_calendar(self, strict: bool = True) -> BusinessCalendar:
        return BusinessCalendar.build(
            calendar_id=self.id,
            name=self.name or self.id,
            timezone_name=self.timezone,
            windows=[bh.to_window() for bh in self.business_hours],
            holidays=[Holiday(h.date, h.label) for h in self.holidays],
            strict=strict,
        )


class PolicyConfig(BaseModel):
    """An SLA policy row."""
    id: str = Field(min_length=1)
    name: str = ""
    priority: int = Field(ge=1, le=4)
    response_target_minutes: int = Field(gt=0)
    resolution_target_minutes: int = Field(gt=0)
    update_cadence_minutes: Optional[int] = Field(default=None, gt=0)
    team_id: Optional[str] = None

    def to_policy(self) -> SLAPolicy:
        return SLAPolicy(
            id=self.id,
            name=self.name or self.id,
            priority=self.priority,
            response_target_minutes=self.response_target_minutes,
            resolution_target_minutes=self.resolution_target_minutes,
            update_cadence_minutes=self.update_cadence_minutes,
            team_id=self.team_id,
        )


class TeamConfig(BaseModel):
    """Team-level calendar override and region membership."""
    calendar_id: Optional[str] = None
    region_id: Optional[str] = None


class RegionConfig(BaseModel):
    calendar_id: Optional[str] = None


class EscalationLevelConfig(BaseModel):
    """Configuration for a single escalation level."""
    level: int = Field(ge=1, description="Escalation level (1-based)")
    notify: List[str] = Field(default_factory=list, description="Slack channels")


class SLAConfig(BaseModel):
    """
    SLA Configuration loaded from YAML.

    Calendar resolution for a ticket: team calendar, then the team's
    region calendar, then `default_calendar_id`.
    """
    calendars: List[CalendarConfig] = Field(default_factory=list)
    policies: List[PolicyConfig] = Field(default_factory=list)
    teams: Dict[str, TeamConfig] = Field(default_factory=dict)
    regions: Dict[str, RegionConfig] = Field(default_factory=dict)
    default_calendar_id: Optional[str] = None
    pause_statuses: List[TicketStatus] = Field(
        default_factory=lambda: sorted(DEFAULT_PAUSE_STATUSES, key=lambda s: s.value),
        description="Statuses that stop the clocks (Resolved/Closed always do)"
    )
    at_risk_threshold_percent: Optional[int] = Field(
        default=DEFAULT_AT_RISK_THRESHOLD_PERCENT,
        ge=1,
        le=99,
        description="Percent of a target after which an at-risk alert fires; null disables"
    )
    escalation_levels: List[EscalationLevelConfig] = Field(
        default_factory=lambda: [
            EscalationLevelConfig(level=1, notify=["#helpdesk-sla"]),
            EscalationLevelConfig(level=2, notify=["#helpdesk-sla", "#helpdesk-leads"]),
        ],
        description="Notification config per escalation level"
    )

    @model_validator(mode="after")
    def validate_references(self) -> "SLAConfig":
        """Reject duplicate ids, duplicate policy scopes and dangling calendar ids."""
        calendar_ids = [c.id for c in self.calendars]
        duplicates = {cid for cid in calendar_ids if calendar_ids.count(cid) > 1}
        if duplicates:
            raise ValueError(f"duplicate calendar ids: {sorted(duplicates)}")

        policy_ids = [p.id for p in self.policies]
        duplicates = {pid for pid in policy_ids if policy_ids.count(pid) > 1}
        if duplicates:
            raise ValueError(f"duplicate policy ids: {sorted(duplicates)}")

        scopes = find_duplicate_scopes(p.to_policy() for p in self.policies)
        if scopes:
            raise ValueError(f"more than one policy for (priority, team): {scopes}")

        known = set(calendar_ids)
        referenced = [("default_calendar_id", self.default_calendar_id)]
        referenced += [(f"teams.{tid}", t.calendar_id) for tid, t in self.teams.items()]
        referenced += [(f"regions.{rid}", r.calendar_id) for rid, r in self.regions.items()]
        for owner, calendar_id in referenced:
            if calendar_id is not None and calendar_id not in known:
                raise ValueError(f"{owner} references unknown calendar '{calendar_id}'")

        for tid, team in self.teams.items():
            if team.region_id is not None and team.region_id not in self.regions:
                raise ValueError(f"teams.{tid} references unknown region '{team.region_id}'")
        return self

    def resolve_calendar_id(self, team_id: Optional[str]) -> Optional[str]:
        """Team calendar, else the team's region calendar, else the default."""
        team = self.teams.get(team_id) if team_id else None
        if team is not None:
            if team.calendar_id:
                return team.calendar_id
            region = self.regions.get(team.region_id) if team.region_id else None
            if region is not None and region.calendar_id:
                return region.calendar_id
        return self.default_calendar_id

    def get_channels_for_level(self, level: int) -> List[str]:
        """Get Slack channels to notify for given escalation level."""
        for esc in self.escalation_levels:
            if esc.level == level:
                return esc.notify
        return []


@dataclass(frozen=True)
class SLAConfigSnapshot:
    """
    One consistent, validated view of the SLA configuration.

    A sweep or a ticket event reads a single snapshot so a concurrent reload
    cannot hand it calendars and policies from two different files.
    """
    config: SLAConfig
    calendars: Dict[str, BusinessCalendar]
    policies: Dict[str, SLAPolicy]
    calendar_problems: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: SLAConfig, strict: bool = False) -> "SLAConfigSnapshot":
        """
        Build calendars and policies.

        Args:
            config: Parsed YAML configuration
            strict: Raise on malformed business hours instead of closing
                the affected days and reporting them in `calendar_problems`
        """
        calendars: Dict[str, BusinessCalendar] = {}
        problems: Dict[str, List[str]] = {}
        for calendar_config in config.calendars:
            try:
                calendars[calendar_config.id] = calendar_config.to_calendar(strict=True)
            except InvalidCalendarConfigException as e:
                if strict:
                    raise
                problems[calendar_config.id] = e.problems
                calendars[calendar_config.id] = calendar_config.to_calendar(strict=False)

        policies = {p.id: p.to_policy() for p in config.policies}
        return cls(config=config, calendars=calendars, policies=policies, calendar_problems=problems)

    def get_calendar(self, calendar_id: Optional[str]) -> BusinessCalendar:
        calendar = self.calendars.get(calendar_id) if calendar_id else None
        if calendar is None:
            raise CalendarNotFoundException(calendar_id)
        return calendar

    def get_policy(self, policy_id: str) -> SLAPolicy:
        policy = self.policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundException(priority=0, policy_id=policy_id)
        return policy

    def find_policy(self, policy_id: str) -> Optional[SLAPolicy]:
        return self.policies.get(policy_id)

    def select_policy(self, priority: int, team_id: Optional[str] = None) -> SLAPolicy:
        return select_policy(self.policies.values(), priority, team_id)

    def calendar_for_team(self, team_id: Optional[str]) -> BusinessCalendar:
        """
        Raises:
            CalendarNotFoundException: nothing resolves, or the id is unknown
        """
        return self.get_calendar(self.config.resolve_calendar_id(team_id))

    def summary(self) -> Dict[str, Any]:
        return {
            "calendars": len(self.calendars),
            "policies": len(self.policies),
            "invalid_calendars": sorted(self.calendar_problems),
        }


# ========== Engine tunables ==========

@dataclass(frozen=True)
class ClockEngineConfig:
    """
    Injected settings for the clock engine.

    Terminal statuses pause the clocks regardless of `pause_statuses`.
    With `follow_sla_config`, the pause set and the at-risk threshold are
    taken from each configuration snapshot, so YAML edits apply on reload;
    `at_risk_threshold_override` (from the environment) still wins.
    """
    pause_statuses: FrozenSet[TicketStatus] = DEFAULT_PAUSE_STATUSES
    response_met_statuses: FrozenSet[TicketStatus] = DEFAULT_RESPONSE_MET_STATUSES
    at_risk_threshold_percent: Optional[int] = DEFAULT_AT_RISK_THRESHOLD_PERCENT
    lock_timeout_seconds: float = 5.0
    sweep_concurrency: int = 8
    sweep_batch_size: int = 200
    shard_index: int = 0
    shard_count: int = 1
    follow_sla_config: bool = False
    at_risk_threshold_override: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(
            self, "pause_statuses", frozenset(TicketStatus(s) for s in self.pause_statuses)
        )
        object.__setattr__(
            self, "response_met_statuses",
            frozenset(TicketStatus(s) for s in self.response_met_statuses)
        )
        for threshold in (self.at_risk_threshold_percent, self.at_risk_threshold_override):
            if threshold is not None and not 0 < threshold < 100:
                raise ValueError("at_risk_threshold_percent must be between 1 and 99")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.sweep_concurrency < 1 or self.sweep_batch_size < 1:
            raise ValueError("sweep concurrency and batch size must be at least 1")
        if not 0 <= self.shard_index < self.shard_count:
            raise ValueError("shard_index must be in [0, shard_count)")

    def pauses(self, status: TicketStatus) -> bool:
        return status in TERMINAL_STATUSES or status in self.pause_statuses

    def meets_response(self, status: TicketStatus) -> bool:
        return status in self.response_met_statuses

    def for_sla_config(self, sla_config: SLAConfig) -> "ClockEngineConfig":
        """The config in force under `sla_config`; self when not following YAML."""
        if not self.follow_sla_config:
            return self
        threshold = sla_config.at_risk_threshold_percent
        if self.at_risk_threshold_override is not None:
            threshold = self.at_risk_threshold_override
        pause_statuses = frozenset(sla_config.pause_statuses)
        if pause_statuses == self.pause_statuses and threshold == self.at_risk_threshold_percent:
            return self
        return replace(self, pause_statuses=pause_statuses, at_risk_threshold_percent=threshold)

    @classmethod
    def from_settings(cls, settings, sla_config: Optional[SLAConfig] = None) -> "ClockEngineConfig":
        """
        Combine environment settings with the YAML pause set and threshold.

        `settings.sla_at_risk_threshold_percent`, when set, overrides YAML.
        The result follows later reloads of the YAML file.
        """
        config = cls(
            at_risk_threshold_override=settings.sla_at_risk_threshold_percent,
            lock_timeout_seconds=settings.sla_lock_timeout_seconds,
            sweep_concurrency=settings.sla_sweep_concurrency,
            sweep_batch_size=settings.sla_sweep_batch_size,
            shard_index=settings.sla_shard_index,
            shard_count=settings.sla_shard_count,
            follow_sla_config=True,
        )
        return config.for_sla_config(sla_config if sla_config is not None else SLAConfig())
