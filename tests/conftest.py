"""
Shared fixtures: an in-memory unit of work, a static config provider and a
recording notification channel, so engine tests run without a database.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import uuid4

import pytest

from core import ClockConflictException, ClockLockTimeoutException
from sla.application import (
    IClockRepository,
    INotificationChannel,
    ISLAAlertRepository,
    ISLAConfigProvider,
    ISLAUnitOfWork,
    MetricsFilter,
    SLAClockEngine,
)
from sla.domain import (
    BusinessCalendar,
    ClockEngineConfig,
    SLAAlert,
    SLAConfig,
    SLAConfigSnapshot,
    TicketSLAClock,
    default_business_week,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


HOUR_MS = 3600 * 1000


# ========== In-memory persistence ==========

class InMemoryStore:
    """Committed state shared by every unit of work of a test."""

    def __init__(self):
        self.clocks: Dict[str, TicketSLAClock] = {}
        self.alerts: Dict[str, SLAAlert] = {}
        self.commits = 0
        self.rollbacks = 0
        # Ticket ids whose load raises, to exercise per-clock error handling
        self.broken: Set[str] = set()
        self.locked: Set[str] = set()


def _copy_clock(clock: TicketSLAClock) -> TicketSLAClock:
    return replace(clock)


def _copy_alert(alert: SLAAlert) -> SLAAlert:
    return replace(alert, channels=list(alert.channels))


class InMemoryClockRepository(IClockRepository):

    def __init__(self, store: InMemoryStore, staged: Dict[str, TicketSLAClock]):
        self._store = store
        self._staged = staged

    def _current(self, ticket_id: str) -> Optional[TicketSLAClock]:
        clock = self._staged.get(ticket_id) or self._store.clocks.get(ticket_id)
        return _copy_clock(clock) if clock else None

    async def get(self, ticket_id: str) -> Optional[TicketSLAClock]:
        return self._current(ticket_id)

    async def get_for_update(self, ticket_id: str, lock_timeout_seconds: float) -> Optional[TicketSLAClock]:
        if ticket_id in self._store.broken:
            raise RuntimeError(f"storage failure for {ticket_id}")
        if ticket_id in self._store.locked:
            raise ClockLockTimeoutException(ticket_id, lock_timeout_seconds)
        return self._current(ticket_id)

    async def add(self, clock: TicketSLAClock) -> None:
        if clock.ticket_id in self._store.clocks or clock.ticket_id in self._staged:
            raise ClockConflictException(clock.ticket_id)
        clock.version = 1
        self._staged[clock.ticket_id] = _copy_clock(clock)

    async def save(self, clock: TicketSLAClock) -> None:
        current = self._staged.get(clock.ticket_id) or self._store.clocks.get(clock.ticket_id)
        if current is None or current.version != clock.version:
            raise ClockConflictException(clock.ticket_id)
        clock.version += 1
        self._staged[clock.ticket_id] = _copy_clock(clock)

    async def list_running_ids(self, after: Optional[str], limit: int) -> List[str]:
        ids = sorted(
            tid for tid, clock in self._store.clocks.items()
            if not clock.paused and (after is None or tid > after)
        )
        return ids[:limit]

    async def list_resolved(self, metrics_filter: MetricsFilter) -> List[TicketSLAClock]:
        result = []
        for clock in self._store.clocks.values():
            if clock.resolution_met_at is None:
                continue
            if metrics_filter.priority is not None and clock.priority != metrics_filter.priority:
                continue
            if metrics_filter.team_id is not None and clock.team_id != metrics_filter.team_id:
                continue
            if metrics_filter.policy_id is not None and clock.policy_id != metrics_filter.policy_id:
                continue
            if metrics_filter.resolved_from is not None and clock.resolution_met_at < metrics_filter.resolved_from:
                continue
            if metrics_filter.resolved_to is not None and clock.resolution_met_at >= metrics_filter.resolved_to:
                continue
            result.append(_copy_clock(clock))
        return sorted(result, key=lambda c: c.ticket_id)


class InMemoryAlertRepository(ISLAAlertRepository):

    def __init__(self, store: InMemoryStore, staged: Dict[str, SLAAlert]):
        self._store = store
        self._staged = staged

    def _all(self) -> List[SLAAlert]:
        merged = {**self._store.alerts, **self._staged}
        return sorted(merged.values(), key=lambda a: a.triggered_at)

    async def create(self, alert: SLAAlert) -> SLAAlert:
        alert.id = alert.id or str(uuid4())
        self._staged[alert.id] = _copy_alert(alert)
        return alert

    async def get_pending_alerts(
        self, ticket_id: Optional[str] = None, limit: int = 100, claim: bool = False
    ) -> List[SLAAlert]:
        pending = [
            _copy_alert(a) for a in self._all()
            if not a.notification_sent and (ticket_id is None or a.ticket_id == ticket_id)
        ]
        return pending[:limit]

    async def mark_sent(self, alert_id: str, sent_at: datetime) -> None:
        alert = _copy_alert(self._staged.get(alert_id) or self._store.alerts[alert_id])
        alert.mark_notification_sent(sent_at)
        self._staged[alert_id] = alert

    async def list_for_ticket(self, ticket_id: str) -> List[SLAAlert]:
        return [_copy_alert(a) for a in self._all() if a.ticket_id == ticket_id]


class InMemoryUnitOfWork(ISLAUnitOfWork):
    """Writes are staged and only reach the store on commit."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        self._staged_clocks: Dict[str, TicketSLAClock] = {}
        self._staged_alerts: Dict[str, SLAAlert] = {}
        self.clocks = InMemoryClockRepository(self._store, self._staged_clocks)
        self.alerts = InMemoryAlertRepository(self._store, self._staged_alerts)
        return self

    async def commit(self) -> None:
        self._store.clocks.update(self._staged_clocks)
        self._store.alerts.update(self._staged_alerts)
        self._store.commits += 1

    async def rollback(self) -> None:
        self._store.rollbacks += 1


# ========== Config and notifications ==========

class StaticConfigProvider(ISLAConfigProvider):
    """Serves a fixed snapshot; `replace_config` simulates a hot reload."""

    def __init__(self, config: SLAConfig):
        self._snapshot = SLAConfigSnapshot.from_config(config, strict=True)

    def get_snapshot(self) -> SLAConfigSnapshot:
        return self._snapshot

    def replace_config(self, config: SLAConfig) -> None:
        self._snapshot = SLAConfigSnapshot.from_config(config, strict=True)


class RecordingChannel(INotificationChannel):

    def __init__(self, succeed: bool = True, delay: float = 0):
        self.succeed = succeed
        self.delay = delay
        self.sent: List[SLAAlert] = []

    async def send_alert(self, alert: SLAAlert) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.succeed:
            return False
        self.sent.append(alert)
        return True


# ========== Fixtures ==========

SLA_CONFIG_DATA = {
    "default_calendar_id": "office",
    "calendars": [
        {
            "id": "office",
            "name": "Office",
            "timezone": "UTC",
            "business_hours": [
                {"day": day, "start": "09:00", "end": "17:00"} for day in range(1, 6)
            ],
            "holidays": [{"date": "2024-01-17", "label": "Founders Day"}],
        },
        {
            "id": "new-york",
            "name": "New York",
            "timezone": "America/New_York",
            "business_hours": [
                {"day": day, "start": "09:00", "end": "17:00"} for day in range(1, 6)
            ],
        },
    ],
    "regions": {"na": {"calendar_id": "new-york"}},
    "teams": {"support-us": {"region_id": "na"}, "vip": {}},
    "policies": [
        {"id": "p1", "name": "High Priority", "priority": 1,
         "response_target_minutes": 15, "resolution_target_minutes": 480},
        {"id": "p3", "name": "Standard", "priority": 3,
         "response_target_minutes": 60, "resolution_target_minutes": 1440},
        {"id": "p3-vip", "name": "Standard (VIP)", "priority": 3, "team_id": "vip",
         "response_target_minutes": 30, "resolution_target_minutes": 600},
    ],
}


@pytest.fixture
def sla_config() -> SLAConfig:
    return SLAConfig(**SLA_CONFIG_DATA)


@pytest.fixture
def office_calendar() -> BusinessCalendar:
    """Mon-Fri 09:00-17:00 UTC, no holidays."""
    return BusinessCalendar.build("office", "Office", "UTC", default_business_week())


@pytest.fixture
def config_provider(sla_config) -> StaticConfigProvider:
    return StaticConfigProvider(sla_config)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store):
    return lambda: InMemoryUnitOfWork(store)


@pytest.fixture
def engine_config() -> ClockEngineConfig:
    return ClockEngineConfig(lock_timeout_seconds=0.5, sweep_batch_size=2)


@pytest.fixture
def engine(uow_factory, config_provider, engine_config) -> SLAClockEngine:
    return SLAClockEngine(uow_factory, config_provider, engine_config)
