"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Errors scoped to a single SLA
clock (missing calendar, lock timeout) are caught per clock by the sweep;
`PolicyNotFoundException` propagates to whoever creates the ticket.
"""

from typing import List, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


# ========== SLA taxonomy ==========

class PolicyNotFoundException(ConfigurationException):
    """No SLA policy matches a ticket's priority/team."""

    def __init__(
        self,
        priority: int,
        team_id: Optional[str] = None,
        policy_id: Optional[str] = None
    ):
        self.priority = priority
        self.team_id = team_id
        self.policy_id = policy_id
        if policy_id:
            message = f"SLA policy '{policy_id}' not found"
        else:
            message = f"No SLA policy for priority {priority}"
            if team_id:
                message += f" (team '{team_id}')"
        super().__init__(
            message,
            {"priority": priority, "team_id": team_id, "policy_id": policy_id}
        )


class CalendarNotFoundException(ResourceNotFoundException):
    """A clock references a calendar that cannot be loaded."""

    def __init__(self, calendar_id: Optional[str], details: Optional[dict] = None):
        super().__init__("Calendar", calendar_id, details)


class ClockNotFoundException(ResourceNotFoundException):
    """No SLA clock exists for the ticket."""

    def __init__(self, ticket_id: str):
        super().__init__("SLA clock", ticket_id)


class ClockLockTimeoutException(ApplicationException):
    """The per-clock lock could not be acquired within the bounded wait."""

    def __init__(self, ticket_id: str, timeout_seconds: float, details: Optional[dict] = None):
        self.ticket_id = ticket_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {timeout_seconds}s waiting for SLA clock {ticket_id}",
            details or {"ticket_id": ticket_id, "timeout_seconds": timeout_seconds}
        )


class ClockConflictException(ClockLockTimeoutException):
    """A concurrent writer updated the clock row first (stale version)."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        self.timeout_seconds = 0.0
        ApplicationException.__init__(
            self,
            f"SLA clock {ticket_id} was modified concurrently",
            {"ticket_id": ticket_id, "reason": "version_conflict"}
        )


class InvalidCalendarConfigException(ConfigurationException):
    """Malformed or overlapping business-hour windows."""

    def __init__(self, calendar_id: str, problems: List[str]):
        self.calendar_id = calendar_id
        self.problems = problems
        super().__init__(
            f"Calendar '{calendar_id}' is invalid: " + "; ".join(problems),
            {"calendar_id": calendar_id, "problems": problems}
        )
