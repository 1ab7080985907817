"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime, timezone

from config import SLAType, TicketStatus
from sla.domain import SLAAlert, SLAPolicy, TicketSLAClock
from sla.domain.events import (
    TicketCreated, TicketStatusChanged, TicketResponded, TicketPriorityChanged,
)


# ========== Type Aliases for Literals ==========
SLATypeStr = Literal["response", "resolution"]
SLAStateStr = Literal["on_track", "at_risk", "breached", "met"]
AlertTypeStr = Literal["at_risk", "breach"]
ClockStateStr = Literal["running", "paused"]


def _utc_or_now(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ========== Request DTOs ==========

class ClockCreateRequest(BaseModel):
    """A ticket was created; start its SLA clock."""
    ticket_id: str = Field(..., min_length=1, max_length=64, description="Ticket ID")
    priority: int = Field(..., ge=1, le=4, description="Ticket priority (1 = critical)")
    team_id: Optional[str] = Field(None, description="Owning team, selects team policy/calendar")
    status: TicketStatus = Field(default=TicketStatus.NEW, description="Initial ticket status")
    created_at: Optional[datetime] = Field(None, description="Ticket creation time (defaults to now)")

    def to_event(self) -> TicketCreated:
        return TicketCreated(
            ticket_id=self.ticket_id,
            priority=self.priority,
            at=_utc_or_now(self.created_at),
            team_id=self.team_id,
            status=self.status,
        )


class StatusChangeRequest(BaseModel):
    """A ticket moved to another status."""
    to_status: TicketStatus = Field(..., description="New ticket status")
    from_status: Optional[TicketStatus] = Field(None, description="Previous status, for the audit log")
    actor_id: Optional[str] = Field(None, description="Who made the change")
    at: Optional[datetime] = Field(None, description="When the change happened (defaults to now)")

    def to_event(self, ticket_id: str) -> TicketStatusChanged:
        return TicketStatusChanged(
            ticket_id=ticket_id,
            to_status=self.to_status,
            at=_utc_or_now(self.at),
            from_status=self.from_status,
            actor_id=self.actor_id,
        )


class FirstResponseRequest(BaseModel):
    """An agent replied to the requester."""
    actor_id: Optional[str] = None
    at: Optional[datetime] = None

    def to_event(self, ticket_id: str) -> TicketResponded:
        return TicketResponded(ticket_id=ticket_id, at=_utc_or_now(self.at), actor_id=self.actor_id)


class PriorityChangeRequest(BaseModel):
    """Priority or owning team changed; re-select the policy."""
    priority: int = Field(..., ge=1, le=4)
    team_id: Optional[str] = None
    at: Optional[datetime] = None

    def to_event(self, ticket_id: str) -> TicketPriorityChanged:
        return TicketPriorityChanged(
            ticket_id=ticket_id,
            priority=self.priority,
            at=_utc_or_now(self.at),
            team_id=self.team_id,
        )


class MetricsQueryDTO(BaseModel):
    """Query parameters for the metrics endpoints."""
    priority: Optional[int] = Field(None, ge=1, le=4)
    team_id: Optional[str] = None
    policy_id: Optional[str] = None
    resolved_from: Optional[datetime] = None
    resolved_to: Optional[datetime] = None

    @field_validator("resolved_to")
    @classmethod
    def validate_range(cls, v: Optional[datetime], info) -> Optional[datetime]:
        """Ensure the range is not inverted."""
        start = info.data.get("resolved_from")
        if v is not None and start is not None and _utc_or_now(v) < _utc_or_now(start):
            raise ValueError("resolved_to cannot be before resolved_from")
        return v


# ========== Response DTOs ==========

class SLATargetResponse(BaseModel):
    """One counter of a clock compared with its target."""
    target_minutes: Optional[int] = Field(None, description="Business minutes allowed (null if policy missing)")
    elapsed_ms: int = Field(..., description="Business milliseconds consumed")
    remaining_ms: Optional[int] = Field(None, description="Business milliseconds left (0 once breached)")
    state: Optional[SLAStateStr] = Field(None, description="on_track, at_risk, breached or met")
    met_at: Optional[datetime] = None


class AlertResponse(BaseModel):
    """Response model for SLA alert."""
    id: Optional[str] = Field(None, description="Alert ID")
    ticket_id: str
    sla_type: SLATypeStr
    alert_type: AlertTypeStr
    triggered_at: datetime
    elapsed_ms: int
    target_ms: int
    escalation_level: int
    notification_sent: bool
    channels: List[str] = Field(default_factory=list)

    @classmethod
    def from_alert(cls, alert: SLAAlert) -> "AlertResponse":
        return cls(
            id=alert.id,
            ticket_id=alert.ticket_id,
            sla_type=alert.sla_type.value,
            alert_type=alert.alert_type.value,
            triggered_at=alert.triggered_at,
            elapsed_ms=alert.elapsed_ms,
            target_ms=alert.target_ms,
            escalation_level=alert.escalation_level,
            notification_sent=alert.notification_sent,
            channels=list(alert.channels),
        )


class ClockResponse(BaseModel):
    """SLA clock of one ticket, projected to the time of the request."""
    ticket_id: str
    policy_id: str
    calendar_id: str
    priority: int
    team_id: Optional[str] = None
    status: str
    clock_state: ClockStateStr
    pause_reason: Optional[str] = None
    last_started_at: Optional[datetime] = None
    created_at: datetime
    in_business_hours: Optional[bool] = Field(None, description="Whether the calendar is open right now")
    response: SLATargetResponse
    resolution: SLATargetResponse
    alerts: List[AlertResponse] = Field(default_factory=list)

    @classmethod
    def from_clock(
        cls,
        clock: TicketSLAClock,
        policy: Optional[SLAPolicy],
        at_risk_threshold_percent: Optional[int] = None,
        alerts: Optional[List[SLAAlert]] = None,
        in_business_hours: Optional[bool] = None,
    ) -> "ClockResponse":
        def target(sla_type: SLAType) -> SLATargetResponse:
            if policy is None:
                return SLATargetResponse(
                    elapsed_ms=clock.elapsed_ms(sla_type),
                    met_at=clock.met_at(sla_type),
                )
            return SLATargetResponse(
                target_minutes=policy.target_ms(sla_type) // 60_000,
                elapsed_ms=clock.elapsed_ms(sla_type),
                remaining_ms=clock.remaining_ms(sla_type, policy),
                state=clock.sla_state(sla_type, policy, at_risk_threshold_percent).value,
                met_at=clock.met_at(sla_type),
            )

        return cls(
            ticket_id=clock.ticket_id,
            policy_id=clock.policy_id,
            calendar_id=clock.calendar_id,
            priority=clock.priority,
            team_id=clock.team_id,
            status=clock.status.value,
            clock_state=clock.state.value,
            pause_reason=clock.pause_reason,
            last_started_at=clock.last_started_at,
            created_at=clock.created_at,
            in_business_hours=in_business_hours,
            response=target(SLAType.RESPONSE),
            resolution=target(SLAType.RESOLUTION),
            alerts=[AlertResponse.from_alert(a) for a in (alerts or [])],
        )


class PolicyResponse(BaseModel):
    id: str
    name: str
    priority: int
    team_id: Optional[str] = None
    response_target_minutes: int
    resolution_target_minutes: int
    update_cadence_minutes: Optional[int] = None

    @classmethod
    def from_policy(cls, policy: SLAPolicy) -> "PolicyResponse":
        return cls(
            id=policy.id,
            name=policy.name,
            priority=policy.priority,
            team_id=policy.team_id,
            response_target_minutes=policy.response_target_minutes,
            resolution_target_minutes=policy.resolution_target_minutes,
            update_cadence_minutes=policy.update_cadence_minutes,
        )


class BusinessElapsedResponse(BaseModel):
    calendar_id: str
    timezone: str
    start: datetime
    end: datetime
    business_elapsed_ms: int
    business_elapsed_minutes: float


class AttainmentResponse(BaseModel):
    """Share of resolved tickets that met their resolution target."""
    total: int
    met: int
    sla_attainment: float = Field(..., ge=0, le=1)
    excluded: int = Field(0, description="Resolved clocks whose policy no longer exists")


class ResolutionTimeResponse(BaseModel):
    count: int
    avg_resolution_ms: float
    excluded: int = Field(0, description="Resolved clocks that never accrued business time")
