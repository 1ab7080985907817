"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

Services:
- PolicyResolver: picks the policy and calendar for a ticket
- SLAClockEngine: reacts to ticket events and runs the periodic sweep
- AlertDispatcher: delivers alerts written by the engine
- SLAMetricsService: attainment and resolution-time reports
"""

import asyncio
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config import AlertType, SLAType
from core.exceptions import (
    CalendarNotFoundException,
    ClockConflictException,
    ClockLockTimeoutException,
    ClockNotFoundException,
)
from shared.infrastructure.logging import get_logger, log_latency
from sla.application.locks import KeyedLock
from sla.domain import (
    BusinessCalendar,
    ClockEngineConfig,
    SLAAlert,
    SLAConfigSnapshot,
    SLAPolicy,
    TicketCreated,
    TicketPriorityChanged,
    TicketResponded,
    TicketSLAClock,
    TicketStatusChanged,
    normalize_instant,
)

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class IClockRepository(ABC):
    """Interface for SLA clock data access."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[TicketSLAClock]:
        """Get a clock without locking it."""

    @abstractmethod
    async def get_for_update(
        self,
        ticket_id: str,
        lock_timeout_seconds: float
    ) -> Optional[TicketSLAClock]:
        """
        Get a clock and hold its row lock until the transaction ends.

        Raises:
            ClockLockTimeoutException: row lock not granted in time
        """

    @abstractmethod
    async def add(self, clock: TicketSLAClock) -> None:
        """Persist a new clock."""

    @abstractmethod
    async def save(self, clock: TicketSLAClock) -> None:
        """Persist changes to a clock loaded in this unit of work."""

    @abstractmethod
    async def list_running_ids(self, after: Optional[str], limit: int) -> List[str]:
        """Ticket ids of running clocks, ordered, strictly after `after`."""

    @abstractmethod
    async def list_resolved(self, metrics_filter: "MetricsFilter") -> List[TicketSLAClock]:
        """Clocks with a resolution timestamp matching the filter."""


class ISLAAlertRepository(ABC):
    """Interface for SLA alert data access."""

    @abstractmethod
    async def create(self, alert: SLAAlert) -> SLAAlert:
        """Create new alert."""

    @abstractmethod
    async def get_pending_alerts(
        self,
        ticket_id: Optional[str] = None,
        limit: int = 100,
        claim: bool = False,
    ) -> List[SLAAlert]:
        """
        Get alerts that haven't been sent yet.

        With `claim`, the rows stay locked until the transaction ends and
        rows locked by another transaction are skipped.
        """

    @abstractmethod
    async def mark_sent(self, alert_id: str, sent_at: datetime) -> None:
        """Mark alert as sent."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[SLAAlert]:
        """All alerts raised for a ticket, oldest first."""


class ISLAUnitOfWork(ABC):
    """
    One transaction spanning clocks and alerts.

    Leaving the context commits; an exception rolls everything back, so a
    flushed counter is never stored without its checkpoint and alerts.
    """

    clocks: IClockRepository
    alerts: ISLAAlertRepository

    async def __aenter__(self) -> "ISLAUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard the transaction."""


UnitOfWorkFactory = Callable[[], ISLAUnitOfWork]


class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_snapshot(self) -> SLAConfigSnapshot:
        """Get the current, validated SLA configuration."""


class INotificationChannel(ABC):
    """Where alerts are delivered (Slack in production)."""

    @abstractmethod
    async def send_alert(self, alert: SLAAlert) -> bool:
        """Deliver one alert; False leaves it pending for a retry."""


# ========== Results ==========

@dataclass(frozen=True)
class MetricsFilter:
    """Narrows the metrics reports; every field is optional."""
    priority: Optional[int] = None
    team_id: Optional[str] = None
    policy_id: Optional[str] = None
    resolved_from: Optional[datetime] = None
    resolved_to: Optional[datetime] = None


@dataclass
class ClockUpdate:
    """Outcome of one locked clock mutation."""
    clock: TicketSLAClock
    delta_ms: int = 0
    alerts: List[SLAAlert] = field(default_factory=list)
    policy: Optional[SLAPolicy] = None


@dataclass
class SweepReport:
    """
    Counters for one sweep.

    A scanned clock is either flushed or lands in one skip bucket;
    `missing_policy` counts flushed clocks whose thresholds were not checked.
    """
    started_at: datetime
    scanned: int = 0
    flushed: int = 0
    business_ms_added: int = 0
    alerts_created: int = 0
    breaches: int = 0
    missing_policy: int = 0
    missing_calendar: int = 0
    lock_timeouts: int = 0
    conflicts: int = 0
    vanished: int = 0
    failed: int = 0
    stopped: bool = False
    duration_ms: float = 0.0

    @property
    def skipped(self) -> int:
        return self.missing_calendar + self.lock_timeouts + self.conflicts + self.vanished + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "scanned": self.scanned,
            "flushed": self.flushed,
            "skipped": self.skipped,
            "business_ms_added": self.business_ms_added,
            "alerts_created": self.alerts_created,
            "breaches": self.breaches,
            "missing_policy": self.missing_policy,
            "missing_calendar": self.missing_calendar,
            "lock_timeouts": self.lock_timeouts,
            "conflicts": self.conflicts,
            "vanished": self.vanished,
            "failed": self.failed,
            "stopped": self.stopped,
            "duration_ms": round(self.duration_ms, 2),
        }


# ========== Application Services ==========

class PolicyResolver:
    """
    Resolves policies and calendars against the current configuration.

    Stateless apart from the provider; every call reads a fresh snapshot.
    """

    def __init__(self, config_provider: ISLAConfigProvider):
        self._config_provider = config_provider

    def resolve(self, priority: int, team_id: Optional[str] = None) -> SLAPolicy:
        """
        Raises:
            PolicyNotFoundException: no team or global policy for the priority
        """
        return self._config_provider.get_snapshot().select_policy(priority, team_id)

    def resolve_calendar(self, team_id: Optional[str] = None) -> BusinessCalendar:
        """
        Raises:
            CalendarNotFoundException: no team, region or default calendar
        """
        return self._config_provider.get_snapshot().calendar_for_team(team_id)

    def get_calendar(self, calendar_id: str) -> BusinessCalendar:
        return self._config_provider.get_snapshot().get_calendar(calendar_id)

    def find_policy(self, policy_id: str) -> Optional[SLAPolicy]:
        """Policy by id, or None if it was removed from configuration."""
        return self._config_provider.get_snapshot().find_policy(policy_id)

    def list_policies(self) -> List[SLAPolicy]:
        """Configured policies, most urgent first, global before team-scoped."""
        policies = self._config_provider.get_snapshot().policies.values()
        return sorted(policies, key=lambda p: (p.priority, p.team_id is not None, p.team_id or "", p.id))


class SLAClockEngine:
    """
    Maintains per-ticket SLA clocks.

    Every mutation of a clock happens under the per-ticket lock (in-process)
    and the row lock (database), inside one unit of work: load, flush,
    transition, evaluate thresholds, persist clock and alerts.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        config_provider: ISLAConfigProvider,
        engine_config: Optional[ClockEngineConfig] = None,
        locks: Optional[KeyedLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._uow_factory = uow_factory
        self._config_provider = config_provider
        self._config = engine_config or ClockEngineConfig()
        self._locks = locks or KeyedLock()
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._stop_requested = False
        self._active_sweeps = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def engine_config(self) -> ClockEngineConfig:
        return self._config

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Stop picking up clocks; flushes already in progress finish normally."""
        if not self._stop_requested:
            logger.info("SLA clock engine stop requested")
        self._stop_requested = True

    async def wait_until_idle(self, timeout: float) -> bool:
        """
        Wait for sweeps in progress to finish.

        Returns:
            False if a sweep was still running when the timeout expired
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("SLA sweep still running at shutdown", extra={"timeout_seconds": timeout})
            return False
        return True

    def _config_for(self, snapshot: SLAConfigSnapshot) -> ClockEngineConfig:
        return self._config.for_sla_config(snapshot.config)

    # ========== Ticket events ==========

    async def start_clock(self, event: TicketCreated) -> TicketSLAClock:
        """
        Create the clock for a new ticket.

        Idempotent: a redelivered event returns the existing clock.

        Raises:
            PolicyNotFoundException: no policy for the ticket's priority/team
            CalendarNotFoundException: no calendar resolves for the team
        """
        snapshot = self._config_provider.get_snapshot()
        policy = snapshot.select_policy(event.priority, event.team_id)
        calendar = snapshot.calendar_for_team(event.team_id)

        async with self._locks.acquire(event.ticket_id, self._config.lock_timeout_seconds):
            async with self._uow_factory() as uow:
                existing = await uow.clocks.get(event.ticket_id)
                if existing is not None:
                    logger.info(
                        "SLA clock already exists",
                        extra={"ticket_id": event.ticket_id, "policy_id": existing.policy_id}
                    )
                    return existing

                clock = TicketSLAClock.start(
                    ticket_id=event.ticket_id,
                    policy=policy,
                    calendar_id=calendar.id,
                    at=event.at,
                    team_id=event.team_id,
                    status=event.status,
                    engine_config=self._config_for(snapshot),
                )
                await uow.clocks.add(clock)

        logger.info(
            "SLA clock started",
            extra={
                "ticket_id": clock.ticket_id,
                "policy_id": policy.id,
                "calendar_id": calendar.id,
                "priority": policy.priority,
                "team_id": event.team_id,
            }
        )
        return clock

    async def handle_status_change(self, event: TicketStatusChanged) -> TicketSLAClock:
        """
        Flush up to the event time, then pause/resume per the new status.

        Raises:
            ClockNotFoundException: no clock for the ticket
            CalendarNotFoundException: the clock's calendar was removed
            ClockLockTimeoutException: the clock stayed locked too long
        """
        def transition(clock: TicketSLAClock, calendar: BusinessCalendar, snapshot: SLAConfigSnapshot) -> int:
            return clock.apply_status_change(calendar, event.to_status, event.at, self._config_for(snapshot))

        update = await self._update_clock(event.ticket_id, event.at, transition)
        logger.info(
            "SLA clock status changed",
            extra={
                "ticket_id": event.ticket_id,
                "from_status": event.from_status.value if event.from_status else None,
                "to_status": update.clock.status.value,
                "paused": update.clock.paused,
                "delta_ms": update.delta_ms,
                "actor_id": event.actor_id,
            }
        )
        return update.clock

    async def record_first_response(self, event: TicketResponded) -> TicketSLAClock:
        """Stop the response counter at the first agent reply."""
        def respond(clock: TicketSLAClock, calendar: BusinessCalendar, snapshot: SLAConfigSnapshot) -> int:
            return clock.mark_responded(calendar, event.at)

        update = await self._update_clock(event.ticket_id, event.at, respond)
        return update.clock

    async def reassign_policy(self, event: TicketPriorityChanged) -> TicketSLAClock:
        """
        Move a clock to the policy for its new priority/team.

        Accrued time is kept, so a downgrade can clear nothing that already
        fired and an upgrade can breach immediately.

        Raises:
            PolicyNotFoundException: no policy for the new priority/team
        """
        snapshot = self._config_provider.get_snapshot()
        policy = snapshot.select_policy(event.priority, event.team_id)
        calendar_id = snapshot.config.resolve_calendar_id(event.team_id)

        def reassign(clock: TicketSLAClock, calendar: BusinessCalendar, snap: SLAConfigSnapshot) -> int:
            return clock.reassign_policy(calendar, policy, event.at, event.team_id, calendar_id)

        update = await self._update_clock(event.ticket_id, event.at, reassign, snapshot)
        logger.info(
            "SLA policy reassigned",
            extra={"ticket_id": event.ticket_id, "policy_id": policy.id, "priority": policy.priority}
        )
        return update.clock

    async def get_clock(self, ticket_id: str) -> TicketSLAClock:
        """
        Raises:
            ClockNotFoundException: no clock for the ticket
        """
        async with self._uow_factory() as uow:
            clock = await uow.clocks.get(ticket_id)
        if clock is None:
            raise ClockNotFoundException(ticket_id)
        return clock

    async def list_alerts(self, ticket_id: str) -> List[SLAAlert]:
        async with self._uow_factory() as uow:
            return await uow.alerts.list_for_ticket(ticket_id)

    # ========== Periodic sweep ==========

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Flush every running clock owned by this worker up to `now`.

        A failure on one clock is logged and counted; it never aborts the
        sweep. One configuration snapshot is used for the whole pass.

        Returns:
            SweepReport with per-outcome counters
        """
        now = normalize_instant(now or self._now())
        snapshot = self._config_provider.get_snapshot()
        report = SweepReport(started_at=now)
        semaphore = asyncio.Semaphore(self._config.sweep_concurrency)
        started = time.perf_counter()

        self._active_sweeps += 1
        self._idle.clear()
        try:
            with log_latency(logger, "sla_sweep", shard_index=self._config.shard_index):
                after: Optional[str] = None
                while not self._stop_requested:
                    async with self._uow_factory() as uow:
                        ticket_ids = await uow.clocks.list_running_ids(after, self._config.sweep_batch_size)
                    if not ticket_ids:
                        break
                    after = ticket_ids[-1]

                    owned = [tid for tid in ticket_ids if self.owns(tid)]
                    await asyncio.gather(*(
                        self._sweep_clock(tid, now, snapshot, report, semaphore) for tid in owned
                    ))
                    if len(ticket_ids) < self._config.sweep_batch_size:
                        break
        finally:
            self._active_sweeps -= 1
            if self._active_sweeps == 0:
                self._idle.set()

        report.stopped = self._stop_requested
        report.duration_ms = (time.perf_counter() - started) * 1000
        logger.info("SLA sweep completed", extra=report.to_dict())
        return report

    def owns(self, ticket_id: str) -> bool:
        """Whether this worker's shard covers the ticket."""
        if self._config.shard_count == 1:
            return True
        shard = zlib.crc32(ticket_id.encode("utf-8")) % self._config.shard_count
        return shard == self._config.shard_index

    async def _sweep_clock(
        self,
        ticket_id: str,
        now: datetime,
        snapshot: SLAConfigSnapshot,
        report: SweepReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if self._stop_requested:
                return
            report.scanned += 1
            try:
                update = await self._update_clock(
                    ticket_id, now, lambda clock, calendar, snap: clock.flush(calendar, now), snapshot
                )
            except ClockNotFoundException:
                report.vanished += 1
                return
            except CalendarNotFoundException as e:
                report.missing_calendar += 1
                logger.warning(
                    "Skipping SLA clock with unknown calendar",
                    extra={"ticket_id": ticket_id, "calendar_id": e.resource_id}
                )
                return
            except ClockConflictException:
                report.conflicts += 1
                logger.warning("SLA clock changed during flush, retrying next sweep", extra={"ticket_id": ticket_id})
                return
            except ClockLockTimeoutException as e:
                report.lock_timeouts += 1
                logger.warning(
                    "SLA clock lock timed out, retrying next sweep",
                    extra={"ticket_id": ticket_id, "timeout_seconds": e.timeout_seconds}
                )
                return
            except Exception as e:
                report.failed += 1
                logger.error(
                    "SLA clock flush failed",
                    extra={"ticket_id": ticket_id, "error": str(e)},
                    exc_info=True
                )
                return

            report.flushed += 1
            report.business_ms_added += update.delta_ms
            report.alerts_created += len(update.alerts)
            report.breaches += sum(1 for a in update.alerts if a.alert_type == AlertType.BREACH)
            if update.policy is None:
                report.missing_policy += 1

    # ========== Internals ==========

    async def _update_clock(
        self,
        ticket_id: str,
        at: datetime,
        mutate: Callable[[TicketSLAClock, BusinessCalendar, SLAConfigSnapshot], int],
        snapshot: Optional[SLAConfigSnapshot] = None,
    ) -> ClockUpdate:
        snapshot = snapshot or self._config_provider.get_snapshot()
        timeout = self._config.lock_timeout_seconds

        async with self._locks.acquire(ticket_id, timeout):
            async with self._uow_factory() as uow:
                clock = await uow.clocks.get_for_update(ticket_id, timeout)
                if clock is None:
                    raise ClockNotFoundException(ticket_id)

                calendar = snapshot.get_calendar(clock.calendar_id)
                delta = mutate(clock, calendar, snapshot)

                policy = snapshot.find_policy(clock.policy_id)
                alerts: List[SLAAlert] = []
                if policy is None:
                    logger.warning(
                        "SLA policy missing, thresholds not evaluated",
                        extra={"ticket_id": ticket_id, "policy_id": clock.policy_id}
                    )
                else:
                    alerts = clock.evaluate_thresholds(
                        policy,
                        at,
                        self._config_for(snapshot).at_risk_threshold_percent,
                        _escalation_channels(snapshot),
                    )
                    for alert in alerts:
                        await uow.alerts.create(alert)

                await uow.clocks.save(clock)

        for alert in alerts:
            log = logger.warning if alert.alert_type == AlertType.BREACH else logger.info
            log(
                "SLA breached" if alert.alert_type == AlertType.BREACH else "SLA at risk",
                extra={
                    "ticket_id": ticket_id,
                    "sla_type": alert.sla_type.value,
                    "elapsed_ms": alert.elapsed_ms,
                    "target_ms": alert.target_ms,
                    "policy_id": alert.policy_id,
                }
            )

        return ClockUpdate(clock=clock, delta_ms=delta, alerts=alerts, policy=policy)


def _escalation_channels(snapshot: SLAConfigSnapshot) -> Dict[int, List[str]]:
    return {level.level: list(level.notify) for level in snapshot.config.escalation_levels}


class AlertDispatcher:
    """
    Delivers pending alerts.

    Alerts stay pending until the channel confirms delivery, so a Slack
    outage delays notifications instead of losing them.

    A batch is claimed, sent and marked in one transaction. Calls in this
    process run one at a time; other workers skip the claimed rows.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        channel: INotificationChannel,
        batch_size: int = 100,
    ):
        self._uow_factory = uow_factory
        self._channel = channel
        self._batch_size = batch_size
        self._lock = asyncio.Lock()

    async def dispatch_pending(self) -> Dict[str, int]:
        """
        Send one batch of pending alerts.

        Returns:
            Summary with `pending`, `sent` and `failed` counts
        """
        async with self._lock:
            async with self._uow_factory() as uow:
                pending = await uow.alerts.get_pending_alerts(limit=self._batch_size, claim=True)

                sent = 0
                for alert in pending:
                    if not await self._channel.send_alert(alert):
                        continue
                    sent_at = datetime.now(timezone.utc)
                    await uow.alerts.mark_sent(alert.id, sent_at)
                    alert.mark_notification_sent(sent_at)
                    sent += 1

        summary = {"pending": len(pending), "sent": sent, "failed": len(pending) - sent}
        if pending:
            logger.info("SLA alerts dispatched", extra=summary)
        return summary


def describe_alert(alert: SLAAlert) -> str:
    """Short human-readable line for logs and chat messages."""
    what = "breached" if alert.alert_type == AlertType.BREACH else "at risk"
    kind = "Response" if alert.sla_type == SLAType.RESPONSE else "Resolution"
    return (
        f"{kind} SLA {what} for ticket {alert.ticket_id}: "
        f"{alert.elapsed_ms // 60000} of {alert.target_ms // 60000} business minutes used"
    )


# ========== Reporting ==========

@dataclass
class AttainmentReport:
    total: int
    met: int
    attainment_ratio: float
    excluded: int = 0


@dataclass
class ResolutionReport:
    count: int
    avg_resolution_ms: float
    excluded: int = 0


class SLAMetricsService:
    """
    Read-only aggregates over resolved clocks.

    A clock whose policy has been removed from configuration cannot be
    judged; it is left out of the ratio and reported as `excluded`.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, config_provider: ISLAConfigProvider):
        self._uow_factory = uow_factory
        self._config_provider = config_provider

    async def _resolved_clocks(self, metrics_filter: Optional[MetricsFilter]) -> List[TicketSLAClock]:
        async with self._uow_factory() as uow:
            return await uow.clocks.list_resolved(metrics_filter or MetricsFilter())

    async def get_attainment(self, metrics_filter: Optional[MetricsFilter] = None) -> AttainmentReport:
        """
        Share of resolved tickets that stayed within their resolution target.

        Returns:
            AttainmentReport; the ratio is 0.0 when nothing matched
        """
        snapshot = self._config_provider.get_snapshot()
        clocks = await self._resolved_clocks(metrics_filter)

        total = met = excluded = 0
        for clock in clocks:
            policy = snapshot.find_policy(clock.policy_id)
            if policy is None:
                excluded += 1
                continue
            total += 1
            if clock.resolution_elapsed_ms <= policy.resolution_target_ms:
                met += 1

        if excluded:
            logger.warning(
                "Resolved clocks with unknown policy left out of attainment",
                extra={"excluded": excluded}
            )
        ratio = met / total if total else 0.0
        return AttainmentReport(total=total, met=met, attainment_ratio=ratio, excluded=excluded)

    async def get_average_resolution_ms(self, metrics_filter: Optional[MetricsFilter] = None) -> ResolutionReport:
        """Mean business resolution time over resolved clocks that accrued any time."""
        clocks = await self._resolved_clocks(metrics_filter)
        values = [c.resolution_elapsed_ms for c in clocks if c.resolution_elapsed_ms > 0]
        average = sum(values) / len(values) if values else 0.0
        return ResolutionReport(count=len(values), avg_resolution_ms=average, excluded=len(clocks) - len(values))
