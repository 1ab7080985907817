"""
Ticket Events
=============

Inputs the clock engine reacts to. They carry the ticket-side facts only;
the ticket itself is owned by the helpdesk and never loaded here.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from config import TicketStatus


@dataclass(frozen=True)
class TicketCreated:
    ticket_id: str
    priority: int
    at: datetime
    team_id: Optional[str] = None
    status: TicketStatus = TicketStatus.NEW


@dataclass(frozen=True)
class TicketStatusChanged:
    ticket_id: str
    to_status: TicketStatus
    at: datetime
    from_status: Optional[TicketStatus] = None
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class TicketResponded:
    """First agent reply, for workflows where status alone does not show engagement."""
    ticket_id: str
    at: datetime
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class TicketPriorityChanged:
    """Priority or team change; the clock is moved to the matching policy."""
    ticket_id: str
    priority: int
    at: datetime
    team_id: Optional[str] = None
