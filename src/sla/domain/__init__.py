"""
SLA Domain Layer
================

Domain layer for SLA monitoring module.

Contains:
- Calendar: business hours, holidays and business-time arithmetic
- Entities: Core business objects with identity (TicketSLAClock, SLAAlert)
- Value Objects: Immutable objects defined by attributes (SLAPolicy, SLAConfig)
- Events: Ticket facts the clock engine reacts to

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla.domain.calendar import (
    BusinessCalendar,
    BusinessHourWindow,
    DayOfWeek,
    Holiday,
    default_business_week,
    ensure_utc,
    parse_clock_time,
)
from sla.domain.entities import TicketSLAClock, SLAAlert, normalize_instant
from sla.domain.events import (
    TicketCreated,
    TicketStatusChanged,
    TicketResponded,
    TicketPriorityChanged,
)
from sla.domain.value_objects import (
    SLAPolicy,
    SLAConfig,
    SLAConfigSnapshot,
    CalendarConfig,
    PolicyConfig,
    EscalationLevelConfig,
    ClockEngineConfig,
    select_policy,
)

__all__ = [
    # Calendar
    "BusinessCalendar",
    "BusinessHourWindow",
    "DayOfWeek",
    "Holiday",
    "default_business_week",
    "ensure_utc",
    "parse_clock_time",
    # Entities
    "TicketSLAClock",
    "SLAAlert",
    "normalize_instant",
    # Events
    "TicketCreated",
    "TicketStatusChanged",
    "TicketResponded",
    "TicketPriorityChanged",
    # Value Objects
    "SLAPolicy",
    "SLAConfig",
    "SLAConfigSnapshot",
    "CalendarConfig",
    "PolicyConfig",
    "EscalationLevelConfig",
    "ClockEngineConfig",
    "select_policy",
]
