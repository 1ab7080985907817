"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA clock endpoints.

Controllers are thin - they delegate to application services. The services
are built once at startup and stored on `app.state`.
"""

from typing import List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Body, Depends, Query, Request, status

from sla.application import (
    SLAClockEngine, SLAMetricsService, PolicyResolver, MetricsFilter,
    ClockCreateRequest, StatusChangeRequest, FirstResponseRequest,
    PriorityChangeRequest, MetricsQueryDTO,
    ClockResponse, PolicyResponse, BusinessElapsedResponse,
    AttainmentResponse, ResolutionTimeResponse,
)
from sla.domain import TicketSLAClock, ensure_utc
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Clocks"])


# ========== Example payloads for Swagger ==========

CLOCK_CREATE_EXAMPLE = {
    "ticket_id": "TICKET-001",
    "priority": 2,
    "team_id": "support-emea",
    "status": "New",
    "created_at": "2024-01-15T09:00:00Z"
}

CLOCK_RESPONSE_EXAMPLE = {
    "ticket_id": "TICKET-001",
    "policy_id": "high-priority",
    "calendar_id": "emea",
    "priority": 2,
    "team_id": "support-emea",
    "status": "In Progress",
    "clock_state": "running",
    "pause_reason": None,
    "last_started_at": "2024-01-15T11:00:00Z",
    "created_at": "2024-01-15T09:00:00Z",
    "in_business_hours": True,
    "response": {
        "target_minutes": 60,
        "elapsed_ms": 1800000,
        "remaining_ms": 0,
        "state": "met",
        "met_at": "2024-01-15T09:30:00Z"
    },
    "resolution": {
        "target_minutes": 480,
        "elapsed_ms": 7200000,
        "remaining_ms": 21600000,
        "state": "on_track",
        "met_at": None
    },
    "alerts": []
}

ATTAINMENT_RESPONSE_EXAMPLE = {
    "total": 40,
    "met": 36,
    "sla_attainment": 0.9,
    "excluded": 0
}


# ========== Dependencies ==========

def get_clock_engine(request: Request) -> SLAClockEngine:
    """Get the SLA clock engine built at startup."""
    return request.app.state.clock_engine


def get_policy_resolver(request: Request) -> PolicyResolver:
    return request.app.state.policy_resolver


def get_metrics_service(request: Request) -> SLAMetricsService:
    return request.app.state.metrics_service


async def _clock_view(
    clock: TicketSLAClock,
    engine: SLAClockEngine,
    resolver: PolicyResolver,
    now: Optional[datetime] = None,
) -> ClockResponse:
    """Project the stored clock to `now` without persisting anything."""
    now = now or datetime.now(timezone.utc)
    calendar = resolver.get_calendar(clock.calendar_id)
    projected = clock.projected(calendar, now)

    policy = resolver.find_policy(clock.policy_id)
    if policy is None:
        logger.warning(
            "SLA clock references unknown policy",
            extra={"ticket_id": clock.ticket_id, "policy_id": clock.policy_id}
        )

    alerts = await engine.list_alerts(clock.ticket_id)
    return ClockResponse.from_clock(
        projected,
        policy,
        engine.engine_config.at_risk_threshold_percent,
        alerts=alerts,
        in_business_hours=calendar.is_business_time(now),
    )


# ========== Route Handlers ==========

@router.post(
    "/clocks",
    response_model=ClockResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start the SLA clock of a new ticket",
    description="""
    Start tracking SLA business time for a newly created ticket.

    **Idempotent**: a clock that already exists for `ticket_id` is returned
    unchanged.

    **Policy selection**: a policy scoped to the ticket's team wins over the
    global policy for the same priority. No matching policy is a 422.

    **Calendar selection**: team calendar, then the team's region calendar,
    then `default_calendar_id`.
    """,
    responses={
        201: {
            "description": "Clock started",
            "content": {"application/json": {"example": CLOCK_RESPONSE_EXAMPLE}}
        },
        404: {"description": "No calendar resolves for the ticket's team"},
        422: {"description": "No SLA policy for the ticket's priority and team"}
    }
)
async def start_clock(
    payload: ClockCreateRequest = Body(..., examples=[CLOCK_CREATE_EXAMPLE]),
    engine: SLAClockEngine = Depends(get_clock_engine),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    clock = await engine.start_clock(payload.to_event())
    return await _clock_view(clock, engine, resolver)


@router.post(
    "/clocks/{ticket_id}/status",
    response_model=ClockResponse,
    summary="Apply a ticket status change",
    description="""
    Flush business time up to the change and pause, resume or keep running.

    Statuses in the configured pause set (by default `Pending Info`,
    `Pending Vendor`, `Scheduled`) pause the clock; `Resolved` and `Closed`
    always stop it and mark the resolution target as met.
    """
)
async def change_status(
    ticket_id: str,
    payload: StatusChangeRequest,
    engine: SLAClockEngine = Depends(get_clock_engine),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    clock = await engine.handle_status_change(payload.to_event(ticket_id))
    return await _clock_view(clock, engine, resolver)


@router.post(
    "/clocks/{ticket_id}/first-response",
    response_model=ClockResponse,
    summary="Record the first agent response"
)
async def record_first_response(
    ticket_id: str,
    payload: Optional[FirstResponseRequest] = None,
    engine: SLAClockEngine = Depends(get_clock_engine),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    payload = payload or FirstResponseRequest()
    clock = await engine.record_first_response(payload.to_event(ticket_id))
    return await _clock_view(clock, engine, resolver)


@router.post(
    "/clocks/{ticket_id}/priority",
    response_model=ClockResponse,
    summary="Re-select the SLA policy after a priority or team change",
    description="""
    Business time accrued so far is kept; the new policy's targets apply
    from now on. Alerts already raised are not raised again.
    """
)
async def change_priority(
    ticket_id: str,
    payload: PriorityChangeRequest,
    engine: SLAClockEngine = Depends(get_clock_engine),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    clock = await engine.reassign_policy(payload.to_event(ticket_id))
    return await _clock_view(clock, engine, resolver)


@router.get(
    "/clocks/{ticket_id}",
    response_model=ClockResponse,
    summary="Get ticket SLA clock",
    description="""
    Get the SLA clock of one ticket projected to the time of the request.

    Returns:
        - Response and resolution counters against their targets
        - Current state (on_track, at_risk, breached, met)
        - Alerts raised so far
    """,
    responses={
        200: {
            "description": "Ticket SLA clock",
            "content": {"application/json": {"example": CLOCK_RESPONSE_EXAMPLE}}
        },
        404: {"description": "No clock for the ticket"}
    }
)
async def get_clock(
    ticket_id: str,
    engine: SLAClockEngine = Depends(get_clock_engine),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    clock = await engine.get_clock(ticket_id)
    return await _clock_view(clock, engine, resolver)


@router.get(
    "/policies",
    response_model=List[PolicyResponse],
    summary="List SLA policies",
    description="Configured policies, most urgent priority first."
)
async def list_policies(resolver: PolicyResolver = Depends(get_policy_resolver)):
    return [PolicyResponse.from_policy(p) for p in resolver.list_policies()]


@router.get(
    "/policies/resolve",
    response_model=PolicyResponse,
    summary="Show which policy a ticket would get",
    responses={422: {"description": "No policy for the priority"}}
)
async def resolve_policy(
    priority: int = Query(..., ge=1, le=4, description="Ticket priority (1 = critical)"),
    team_id: Optional[str] = Query(None, description="Owning team"),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    return PolicyResponse.from_policy(resolver.resolve(priority, team_id))


@router.get(
    "/calendars/{calendar_id}/elapsed",
    response_model=BusinessElapsedResponse,
    summary="Business time between two instants",
    description="""
    Business time the calendar counts between `start` and `end`.

    Naive timestamps are read as UTC. An `end` at or before `start` yields 0.
    """
)
async def business_elapsed(
    calendar_id: str,
    start: datetime = Query(..., description="Interval start (ISO 8601)"),
    end: datetime = Query(..., description="Interval end (ISO 8601)"),
    resolver: PolicyResolver = Depends(get_policy_resolver),
):
    calendar = resolver.get_calendar(calendar_id)
    elapsed_ms = calendar.business_elapsed_ms(start, end)
    return BusinessElapsedResponse(
        calendar_id=calendar.id,
        timezone=calendar.timezone,
        start=ensure_utc(start),
        end=ensure_utc(end),
        business_elapsed_ms=elapsed_ms,
        business_elapsed_minutes=round(elapsed_ms / 60000, 3),
    )


def _metrics_filter(query: MetricsQueryDTO) -> MetricsFilter:
    return MetricsFilter(
        priority=query.priority,
        team_id=query.team_id,
        policy_id=query.policy_id,
        resolved_from=ensure_utc(query.resolved_from) if query.resolved_from else None,
        resolved_to=ensure_utc(query.resolved_to) if query.resolved_to else None,
    )


@router.get(
    "/metrics/sla",
    response_model=AttainmentResponse,
    summary="SLA attainment",
    description="""
    Share of resolved tickets whose business resolution time stayed within
    their policy's resolution target. `sla_attainment` is 0.0 when no
    resolved ticket matches the filters.
    """,
    responses={
        200: {
            "description": "Attainment over resolved tickets",
            "content": {"application/json": {"example": ATTAINMENT_RESPONSE_EXAMPLE}}
        }
    }
)
async def get_attainment(
    query: MetricsQueryDTO = Depends(),
    metrics: SLAMetricsService = Depends(get_metrics_service),
):
    report = await metrics.get_attainment(_metrics_filter(query))
    return AttainmentResponse(
        total=report.total,
        met=report.met,
        sla_attainment=report.attainment_ratio,
        excluded=report.excluded,
    )


@router.get(
    "/metrics/resolution",
    response_model=ResolutionTimeResponse,
    summary="Average business resolution time"
)
async def get_average_resolution(
    query: MetricsQueryDTO = Depends(),
    metrics: SLAMetricsService = Depends(get_metrics_service),
):
    report = await metrics.get_average_resolution_ms(_metrics_filter(query))
    return ResolutionTimeResponse(
        count=report.count,
        avg_resolution_ms=report.avg_resolution_ms,
        excluded=report.excluded,
    )


# Export router for inclusion in main app
sla_router = router
