"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from core.exceptions import (
    ApplicationException,
    RepositoryException,
    ResourceNotFoundException,
    ConfigurationException,
    PolicyNotFoundException,
    CalendarNotFoundException,
    ClockNotFoundException,
    ClockLockTimeoutException,
    ClockConflictException,
    InvalidCalendarConfigException,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "PolicyNotFoundException",
    "CalendarNotFoundException",
    "ClockNotFoundException",
    "ClockLockTimeoutException",
    "ClockConflictException",
    "InvalidCalendarConfigException",
]
