"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from infrastructure.database import Base
from config import TicketStatus, SLAType, AlertType


class SLAClockModel(Base):
    """
    Database model for the TicketSLAClock entity.

    Maps to the 'ticket_sla_clocks' table, one row per ticket. Rows are
    never deleted; resolved tickets keep their counters for reporting.
    """
    __tablename__ = "ticket_sla_clocks"

    # The helpdesk's ticket id
    ticket_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Policy / calendar in force
    policy_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    calendar_id: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[TicketStatus] = mapped_column(String(32), nullable=False, default=TicketStatus.NEW)

    # Business-time counters (milliseconds)
    response_elapsed_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    resolution_elapsed_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Running/paused state
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pause_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Targets met
    response_met_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_met_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Alert idempotency
    response_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    response_breach_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_breach_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    # Optimistic concurrency token, bumped by SQLAlchemy on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        # Keyset pagination over running clocks
        Index("ix_ticket_sla_clocks_running", "paused", "ticket_id"),
    )

    __mapper_args__ = {"version_id_col": version}


class AlertModel(Base):
    """
    Database model for SLA Alert entity.

    Maps to the 'sla_alerts' table. Rows double as an outbox: they are
    written with the clock flush and sent by the dispatcher afterwards.
    """
    __tablename__ = "sla_alerts"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Ticket reference
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Alert details
    sla_type: Mapped[SLAType] = mapped_column(String(32), nullable=False)  # response or resolution
    alert_type: Mapped[AlertType] = mapped_column(String(32), nullable=False)  # at_risk or breach
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    elapsed_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    target_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Escalation
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    channels: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Notification tracking
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
