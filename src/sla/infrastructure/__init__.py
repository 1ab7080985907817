"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA monitoring:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: External service integrations (Slack, config watcher, scheduler)
"""

from sla.infrastructure.models import SLAClockModel, AlertModel
from sla.infrastructure.repositories import (
    SQLAlchemyClockRepository,
    SQLAlchemyAlertRepository,
    SQLAlchemyUnitOfWork,
    unit_of_work_factory,
)
from sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    ConfigFileHandler,
    SLAConfigManager,
    SLAScheduler,
    SlackClient,
)

__all__ = [
    "SLAClockModel",
    "AlertModel",
    "SQLAlchemyClockRepository",
    "SQLAlchemyAlertRepository",
    "SQLAlchemyUnitOfWork",
    "unit_of_work_factory",
    "CircuitBreaker",
    "CircuitState",
    "ConfigFileHandler",
    "SLAConfigManager",
    "SLAScheduler",
    "SlackClient",
]
