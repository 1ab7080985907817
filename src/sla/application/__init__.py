"""
SLA Application Layer
======================

Application layer for SLA monitoring module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization
- Locks: per-ticket serialization of clock mutations

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla.application.dto import (
    ClockCreateRequest,
    StatusChangeRequest,
    FirstResponseRequest,
    PriorityChangeRequest,
    MetricsQueryDTO,
    SLATargetResponse,
    AlertResponse,
    ClockResponse,
    PolicyResponse,
    BusinessElapsedResponse,
    AttainmentResponse,
    ResolutionTimeResponse,
)
from sla.application.locks import KeyedLock
from sla.application.services import (
    PolicyResolver,
    SLAClockEngine,
    AlertDispatcher,
    SLAMetricsService,
    SweepReport,
    ClockUpdate,
    MetricsFilter,
    AttainmentReport,
    ResolutionReport,
    describe_alert,
    IClockRepository,
    ISLAAlertRepository,
    ISLAUnitOfWork,
    ISLAConfigProvider,
    INotificationChannel,
    UnitOfWorkFactory,
)

__all__ = [
    # DTOs
    "ClockCreateRequest",
    "StatusChangeRequest",
    "FirstResponseRequest",
    "PriorityChangeRequest",
    "MetricsQueryDTO",
    "SLATargetResponse",
    "AlertResponse",
    "ClockResponse",
    "PolicyResponse",
    "BusinessElapsedResponse",
    "AttainmentResponse",
    "ResolutionTimeResponse",
    # Services
    "PolicyResolver",
    "SLAClockEngine",
    "AlertDispatcher",
    "SLAMetricsService",
    "SweepReport",
    "ClockUpdate",
    "MetricsFilter",
    "AttainmentReport",
    "ResolutionReport",
    "describe_alert",
    "KeyedLock",
    # Repository Interfaces
    "IClockRepository",
    "ISLAAlertRepository",
    "ISLAUnitOfWork",
    "ISLAConfigProvider",
    "INotificationChannel",
    "UnitOfWorkFactory",
]
