"""
SLA Domain Entities
====================

Pure Python domain entities for SLA monitoring.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.

`TicketSLAClock` is the per-ticket pair of business-time counters. All
time arithmetic goes through a `BusinessCalendar`; all instants are
aware UTC datetimes truncated to the millisecond.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional

from config import (
    SLAType, SLAState, AlertType, ClockState, TicketStatus, TERMINAL_STATUSES,
)
from sla.domain.calendar import BusinessCalendar, ensure_utc, truncate_to_millisecond
from sla.domain.value_objects import ClockEngineConfig, SLAPolicy


def normalize_instant(value: datetime) -> datetime:
    """Aware UTC, millisecond precision."""
    return truncate_to_millisecond(ensure_utc(value))


@dataclass
class SLAAlert:
    """
    SLA alert entity.

    Represents a notification that needs to be sent when SLA
    thresholds are crossed. Alerts are written in the same transaction
    as the clock flush that produced them and delivered later.
    """

    id: Optional[str]
    ticket_id: str
    sla_type: SLAType
    alert_type: AlertType
    triggered_at: datetime
    elapsed_ms: int
    target_ms: int
    policy_id: str

    # Escalation info
    escalation_level: int = 1
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None

    # Channels
    channels: List[str] = field(default_factory=list)

    @property
    def percent_elapsed(self) -> float:
        if self.target_ms <= 0:
            return 0.0
        return round(self.elapsed_ms * 100 / self.target_ms, 1)

    def mark_notification_sent(self, timestamp: Optional[datetime] = None) -> None:
        """Mark notification as sent."""
        self.notification_sent = True
        self.notification_sent_at = timestamp or datetime.now(timezone.utc)


@dataclass
class TicketSLAClock:
    """
    Per-ticket SLA clock.

    While running, `last_started_at` is the checkpoint up to which business
    time has been folded into the counters. While paused it is None and
    `paused_at` remembers where accrual stopped.

    The response counter stops growing once `response_met_at` is set; the
    resolution counter keeps accruing until a terminal status pauses it.
    """

    ticket_id: str
    policy_id: str
    calendar_id: str
    priority: int
    status: TicketStatus
    created_at: datetime
    team_id: Optional[str] = None

    response_elapsed_ms: int = 0
    resolution_elapsed_ms: int = 0
    last_started_at: Optional[datetime] = None
    paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None

    response_met_at: Optional[datetime] = None
    resolution_met_at: Optional[datetime] = None

    # Set once per clock and threshold, never cleared
    response_at_risk_notified_at: Optional[datetime] = None
    response_breach_notified_at: Optional[datetime] = None
    resolution_at_risk_notified_at: Optional[datetime] = None
    resolution_breach_notified_at: Optional[datetime] = None

    updated_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        """Validate clock on initialization."""
        self.status = TicketStatus(self.status)
        if self.response_elapsed_ms < 0 or self.resolution_elapsed_ms < 0:
            raise ValueError("elapsed counters cannot be negative")
        if self.paused and self.last_started_at is not None:
            raise ValueError("a paused clock cannot have a running checkpoint")
        if not self.paused and self.last_started_at is None:
            raise ValueError("a running clock needs a checkpoint")

    @classmethod
    def start(
        cls,
        ticket_id: str,
        policy: SLAPolicy,
        calendar_id: str,
        at: datetime,
        team_id: Optional[str] = None,
        status: TicketStatus = TicketStatus.NEW,
        engine_config: Optional[ClockEngineConfig] = None,
    ) -> "TicketSLAClock":
        """Create a clock for a new ticket, running from `at` with zeroed counters."""
        at = normalize_instant(at)
        engine_config = engine_config or ClockEngineConfig()
        clock = cls(
            ticket_id=ticket_id,
            policy_id=policy.id,
            calendar_id=calendar_id,
            priority=policy.priority,
            status=status,
            created_at=at,
            team_id=team_id,
            last_started_at=at,
            updated_at=at,
        )
        if status != TicketStatus.NEW:
            # Tickets can be imported mid-workflow
            clock._enter(status, at, engine_config)
        return clock

    # ========== Queries ==========

    @property
    def state(self) -> ClockState:
        return ClockState.PAUSED if self.paused else ClockState.RUNNING

    @property
    def is_resolved(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_ms(self, sla_type: SLAType) -> int:
        if sla_type == SLAType.RESPONSE:
            return self.response_elapsed_ms
        return self.resolution_elapsed_ms

    def met_at(self, sla_type: SLAType) -> Optional[datetime]:
        if sla_type == SLAType.RESPONSE:
            return self.response_met_at
        return self.resolution_met_at

    def remaining_ms(self, sla_type: SLAType, policy: SLAPolicy) -> int:
        return max(0, policy.target_ms(sla_type) - self.elapsed_ms(sla_type))

    def sla_state(
        self,
        sla_type: SLAType,
        policy: SLAPolicy,
        at_risk_threshold_percent: Optional[int] = None
    ) -> SLAState:
        """Current standing of one counter against its target."""
        elapsed = self.elapsed_ms(sla_type)
        target = policy.target_ms(sla_type)
        if elapsed > target:
            return SLAState.BREACHED
        if self.met_at(sla_type) is not None:
            return SLAState.MET
        if _reached_threshold(elapsed, target, at_risk_threshold_percent):
            return SLAState.AT_RISK
        return SLAState.ON_TRACK

    def notified_at(self, sla_type: SLAType, alert_type: AlertType) -> Optional[datetime]:
        return getattr(self, f"{sla_type.value}_{alert_type.value}_notified_at")

    def projected(self, calendar: BusinessCalendar, now: datetime) -> "TicketSLAClock":
        """Copy of this clock flushed to `now`, for read models; self is untouched."""
        copy = replace(self)
        copy.flush(calendar, now)
        return copy

    # ========== Commands ==========

    def flush(self, calendar: BusinessCalendar, now: datetime) -> int:
        """
        Fold business time since the checkpoint into the counters.

        Both counters receive the same delta (the response counter only
        until the response is met). The checkpoint never moves backwards,
        so a `now` behind the checkpoint adds nothing.

        Returns:
            Milliseconds added to the resolution counter
        """
        if self.paused or self.last_started_at is None:
            return 0

        now = normalize_instant(now)
        checkpoint = ensure_utc(self.last_started_at)
        delta = calendar.business_elapsed_ms(checkpoint, now)
        if delta:
            if self.response_met_at is None:
                self.response_elapsed_ms += delta
            self.resolution_elapsed_ms += delta
        if now > checkpoint:
            self.last_started_at = now
        self.updated_at = now
        return delta

    def apply_status_change(
        self,
        calendar: BusinessCalendar,
        to_status: TicketStatus,
        at: datetime,
        engine_config: ClockEngineConfig,
    ) -> int:
        """
        Flush up to `at`, then move into `to_status`.

        Pausing statuses stop the clock, any other status (re)starts it.

        Returns:
            Milliseconds flushed before the transition
        """
        at = normalize_instant(at)
        delta = self.flush(calendar, at)
        self._enter(TicketStatus(to_status), at, engine_config)
        self.updated_at = at
        return delta

    def mark_responded(self, calendar: BusinessCalendar, at: datetime) -> int:
        """Record an explicit first response (agent reply) and freeze the response counter."""
        at = normalize_instant(at)
        delta = self.flush(calendar, at)
        if self.response_met_at is None:
            self.response_met_at = at
        self.updated_at = at
        return delta

    def reassign_policy(
        self,
        calendar: BusinessCalendar,
        policy: SLAPolicy,
        at: datetime,
        team_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
    ) -> int:
        """
        Switch to another policy (priority or team change).

        Time accrued so far is kept and was measured on the old calendar;
        only the targets change, plus the calendar used from `at` onwards.
        """
        at = normalize_instant(at)
        delta = self.flush(calendar, at)
        self.policy_id = policy.id
        self.priority = policy.priority
        self.team_id = team_id
        if calendar_id:
            self.calendar_id = calendar_id
        self.updated_at = at
        return delta

    def evaluate_thresholds(
        self,
        policy: SLAPolicy,
        now: datetime,
        at_risk_threshold_percent: Optional[int] = None,
        escalation_channels: Optional[dict] = None,
    ) -> List[SLAAlert]:
        """
        Compare both counters with the policy targets.

        Each (counter, threshold) pair alerts at most once over the life of
        the clock. At-risk is skipped once the target is breached or met.

        Args:
            escalation_channels: Optional {level: [channel, ...]} mapping

        Returns:
            New alerts to persist (empty when nothing crossed)
        """
        now = normalize_instant(now)
        alerts = []
        for sla_type in SLAType:
            alert = self._evaluate(sla_type, policy, now, at_risk_threshold_percent)
            if alert is not None:
                if escalation_channels:
                    alert.channels = list(escalation_channels.get(alert.escalation_level, []))
                alerts.append(alert)
        return alerts

    # ========== Internals ==========

    def _evaluate(
        self,
        sla_type: SLAType,
        policy: SLAPolicy,
        now: datetime,
        at_risk_threshold_percent: Optional[int],
    ) -> Optional[SLAAlert]:
        elapsed = self.elapsed_ms(sla_type)
        target = policy.target_ms(sla_type)

        if elapsed > target:
            if self.notified_at(sla_type, AlertType.BREACH) is None:
                return self._raise_alert(sla_type, AlertType.BREACH, policy, now, level=2)
            return None

        if self.met_at(sla_type) is not None:
            return None
        if (
            _reached_threshold(elapsed, target, at_risk_threshold_percent)
            and self.notified_at(sla_type, AlertType.AT_RISK) is None
        ):
            return self._raise_alert(sla_type, AlertType.AT_RISK, policy, now, level=1)
        return None

    def _raise_alert(
        self,
        sla_type: SLAType,
        alert_type: AlertType,
        policy: SLAPolicy,
        now: datetime,
        level: int,
    ) -> SLAAlert:
        setattr(self, f"{sla_type.value}_{alert_type.value}_notified_at", now)
        return SLAAlert(
            id=None,
            ticket_id=self.ticket_id,
            sla_type=sla_type,
            alert_type=alert_type,
            triggered_at=now,
            elapsed_ms=self.elapsed_ms(sla_type),
            target_ms=policy.target_ms(sla_type),
            policy_id=policy.id,
            escalation_level=level,
        )

    def _enter(self, to_status: TicketStatus, at: datetime, engine_config: ClockEngineConfig) -> None:
        if self.response_met_at is None and engine_config.meets_response(to_status):
            self.response_met_at = at

        if to_status in TERMINAL_STATUSES:
            if self.resolution_met_at is None:
                self.resolution_met_at = at
        else:
            # Reopened
            self.resolution_met_at = None

        if engine_config.pauses(to_status):
            self._pause(to_status.value, at)
        elif self.paused:
            self._resume(at)
        self.status = to_status

    def _pause(self, reason: str, at: datetime) -> None:
        if not self.paused:
            self.paused_at = max(at, ensure_utc(self.last_started_at)) if self.last_started_at else at
        self.paused = True
        self.pause_reason = reason
        self.last_started_at = None

    def _resume(self, at: datetime) -> None:
        # A resume stamped before the pause must not re-count paused time
        resume_at = max(at, ensure_utc(self.paused_at)) if self.paused_at else at
        self.paused = False
        self.pause_reason = None
        self.paused_at = None
        self.last_started_at = resume_at


def _reached_threshold(elapsed_ms: int, target_ms: int, percent: Optional[int]) -> bool:
    if not percent:
        return False
    return elapsed_ms * 100 >= target_ms * percent
