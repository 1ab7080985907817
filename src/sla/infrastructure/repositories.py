"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from typing import Dict, List, Optional
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from sla.application import (
    IClockRepository, ISLAAlertRepository, ISLAUnitOfWork, MetricsFilter,
)
from sla.domain import SLAAlert, TicketSLAClock, ensure_utc
from sla.infrastructure.models import AlertModel, SLAClockModel
from config import AlertType, SLAType, TicketStatus
from core import ClockConflictException, ClockLockTimeoutException, RepositoryException

# PostgreSQL lock_not_available
LOCK_NOT_AVAILABLE = "55P03"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    return ensure_utc(value) if value is not None else None


def _is_lock_timeout(error: DBAPIError) -> bool:
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == LOCK_NOT_AVAILABLE:
        return True
    message = str(orig).lower()
    return "lock timeout" in message or "database is locked" in message


_CLOCK_FIELDS = (
    "policy_id", "calendar_id", "priority", "team_id",
    "response_elapsed_ms", "resolution_elapsed_ms",
    "last_started_at", "paused", "pause_reason", "paused_at",
    "response_met_at", "resolution_met_at",
    "response_at_risk_notified_at", "response_breach_notified_at",
    "resolution_at_risk_notified_at", "resolution_breach_notified_at",
    "created_at", "updated_at",
)


class SQLAlchemyClockRepository(IClockRepository):
    """
    SQLAlchemy implementation of the SLA clock repository.

    Models loaded through this repository are remembered so `save` updates
    the same row instance, letting the version column guard the write.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._loaded: Dict[str, SLAClockModel] = {}

    @property
    def _dialect(self) -> str:
        bind = self._session.bind
        return bind.dialect.name if bind is not None else ""

    def _to_domain(self, model: SLAClockModel) -> TicketSLAClock:
        self._loaded[model.ticket_id] = model
        return TicketSLAClock(
            ticket_id=model.ticket_id,
            policy_id=model.policy_id,
            calendar_id=model.calendar_id,
            priority=model.priority,
            status=TicketStatus(model.status),
            created_at=_utc(model.created_at),
            team_id=model.team_id,
            response_elapsed_ms=model.response_elapsed_ms,
            resolution_elapsed_ms=model.resolution_elapsed_ms,
            last_started_at=_utc(model.last_started_at),
            paused=model.paused,
            pause_reason=model.pause_reason,
            paused_at=_utc(model.paused_at),
            response_met_at=_utc(model.response_met_at),
            resolution_met_at=_utc(model.resolution_met_at),
            response_at_risk_notified_at=_utc(model.response_at_risk_notified_at),
            response_breach_notified_at=_utc(model.response_breach_notified_at),
            resolution_at_risk_notified_at=_utc(model.resolution_at_risk_notified_at),
            resolution_breach_notified_at=_utc(model.resolution_breach_notified_at),
            updated_at=_utc(model.updated_at),
            version=model.version,
        )

    @staticmethod
    def _copy_to_model(clock: TicketSLAClock, model: SLAClockModel) -> None:
        for name in _CLOCK_FIELDS:
            setattr(model, name, getattr(clock, name))
        model.status = clock.status.value
        if model.updated_at is None:
            model.updated_at = clock.created_at

    async def get(self, ticket_id: str) -> Optional[TicketSLAClock]:
        """Get clock by ticket ID."""
        model = await self._session.get(SLAClockModel, ticket_id)
        return self._to_domain(model) if model else None

    async def get_for_update(
        self,
        ticket_id: str,
        lock_timeout_seconds: float
    ) -> Optional[TicketSLAClock]:
        """Get clock by ticket ID and lock its row (SELECT ... FOR UPDATE)."""
        try:
            if self._dialect == "postgresql":
                # SET cannot take bind parameters; the value is an int
                timeout_ms = max(1, int(lock_timeout_seconds * 1000))
                await self._session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

            stmt = (
                select(SLAClockModel)
                .where(SLAClockModel.ticket_id == ticket_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self._session.execute(stmt)
        except DBAPIError as e:
            if _is_lock_timeout(e):
                raise ClockLockTimeoutException(ticket_id, lock_timeout_seconds) from e
            raise RepositoryException(f"Failed to load SLA clock {ticket_id}", {"error": str(e)}) from e

        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def add(self, clock: TicketSLAClock) -> None:
        """Create new clock."""
        model = SLAClockModel(ticket_id=clock.ticket_id)
        self._copy_to_model(clock, model)
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            # Another worker created the clock first
            raise ClockConflictException(clock.ticket_id) from e

        self._loaded[clock.ticket_id] = model
        clock.version = model.version

    async def save(self, clock: TicketSLAClock) -> None:
        """Write back a clock loaded in this session."""
        model = self._loaded.get(clock.ticket_id)
        if model is None:
            model = await self._session.get(SLAClockModel, clock.ticket_id)
        if model is None:
            raise RepositoryException(f"SLA clock {clock.ticket_id} not found")

        self._copy_to_model(clock, model)
        try:
            await self._session.flush()
        except StaleDataError as e:
            raise ClockConflictException(clock.ticket_id) from e
        clock.version = model.version

    async def list_running_ids(self, after: Optional[str], limit: int) -> List[str]:
        """Running clock ids in ticket id order (keyset pagination)."""
        stmt = select(SLAClockModel.ticket_id).where(SLAClockModel.paused.is_(False))
        if after is not None:
            stmt = stmt.where(SLAClockModel.ticket_id > after)
        stmt = stmt.order_by(SLAClockModel.ticket_id.asc()).limit(limit)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_resolved(self, metrics_filter: MetricsFilter) -> List[TicketSLAClock]:
        """List resolved clocks with filters."""
        stmt = select(SLAClockModel).where(SLAClockModel.resolution_met_at.is_not(None))

        if metrics_filter.priority is not None:
            stmt = stmt.where(SLAClockModel.priority == metrics_filter.priority)
        if metrics_filter.team_id is not None:
            stmt = stmt.where(SLAClockModel.team_id == metrics_filter.team_id)
        if metrics_filter.policy_id is not None:
            stmt = stmt.where(SLAClockModel.policy_id == metrics_filter.policy_id)
        if metrics_filter.resolved_from is not None:
            stmt = stmt.where(SLAClockModel.resolution_met_at >= metrics_filter.resolved_from)
        if metrics_filter.resolved_to is not None:
            stmt = stmt.where(SLAClockModel.resolution_met_at < metrics_filter.resolved_to)

        result = await self._session.execute(stmt.order_by(SLAClockModel.ticket_id.asc()))
        return [self._to_domain(model) for model in result.scalars().all()]


class SQLAlchemyAlertRepository(ISLAAlertRepository):
    """
    SQLAlchemy implementation of SLA alert repository.

    Handles persistence of SLAAlert entities.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_domain(model: AlertModel) -> SLAAlert:
        return SLAAlert(
            id=str(model.id),
            ticket_id=model.ticket_id,
            sla_type=SLAType(model.sla_type),
            alert_type=AlertType(model.alert_type),
            triggered_at=_utc(model.triggered_at),
            elapsed_ms=model.elapsed_ms,
            target_ms=model.target_ms,
            policy_id=model.policy_id,
            escalation_level=model.escalation_level,
            notification_sent=model.notification_sent,
            notification_sent_at=_utc(model.notification_sent_at),
            channels=list(model.channels or []),
        )

    async def create(self, alert: SLAAlert) -> SLAAlert:
        """Create new alert."""
        model = AlertModel(
            id=uuid4() if not alert.id else UUID(alert.id),
            ticket_id=alert.ticket_id,
            policy_id=alert.policy_id,
            sla_type=alert.sla_type.value,
            alert_type=alert.alert_type.value,
            triggered_at=alert.triggered_at,
            elapsed_ms=alert.elapsed_ms,
            target_ms=alert.target_ms,
            escalation_level=alert.escalation_level,
            channels=list(alert.channels),
            notification_sent=alert.notification_sent,
            notification_sent_at=alert.notification_sent_at
        )

        self._session.add(model)
        await self._session.flush()

        # Update alert with generated ID
        alert.id = str(model.id)

        return alert

    async def get_pending_alerts(
        self,
        ticket_id: Optional[str] = None,
        limit: int = 100,
        claim: bool = False,
    ) -> List[SLAAlert]:
        """Get alerts that haven't been sent yet, optionally locking them (SKIP LOCKED)."""
        stmt = select(AlertModel).where(AlertModel.notification_sent.is_(False))

        if ticket_id:
            stmt = stmt.where(AlertModel.ticket_id == ticket_id)

        stmt = stmt.order_by(AlertModel.triggered_at.asc()).limit(limit)
        if claim:
            # SQLite compiles this away; the dispatcher lock covers a single worker
            stmt = stmt.with_for_update(skip_locked=True)

        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def list_for_ticket(self, ticket_id: str) -> List[SLAAlert]:
        stmt = (
            select(AlertModel)
            .where(AlertModel.ticket_id == ticket_id)
            .order_by(AlertModel.triggered_at.asc())
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def mark_sent(self, alert_id: str, sent_at: datetime) -> None:
        """Mark alert as sent."""
        try:
            alert_uuid = UUID(alert_id)
        except ValueError:
            raise RepositoryException(f"Invalid alert ID: {alert_id}")

        model = await self._session.get(AlertModel, alert_uuid)
        if not model:
            raise RepositoryException(f"Alert {alert_id} not found")

        model.notification_sent = True
        model.notification_sent_at = sent_at
        await self._session.flush()


class SQLAlchemyUnitOfWork(ISLAUnitOfWork):
    """
    Unit of work over one AsyncSession.

    Usage:
        async with SQLAlchemyUnitOfWork(session_maker) as uow:
            clock = await uow.clocks.get_for_update(ticket_id, 5)
            ...
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_factory()
        self.clocks = SQLAlchemyClockRepository(self._session)
        self.alerts = SQLAlchemyAlertRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        # Repositories flush eagerly, so version conflicts surface in save()
        try:
            await self._session.commit()
        except IntegrityError as e:
            await self._session.rollback()
            raise RepositoryException("SLA transaction violated a constraint", {"error": str(e)}) from e

    async def rollback(self) -> None:
        await self._session.rollback()


def unit_of_work_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Callable the engine uses to open a fresh unit of work per operation."""
    def factory() -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory)
    return factory
