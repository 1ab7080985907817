"""
SLA Clock Module
================

Bounded Context for helpdesk Service Level Agreement clocks.

Responsibilities:
- Count business time per ticket against business-hours calendars
- Select the SLA policy (response/resolution targets) for a ticket
- Pause and resume clocks as tickets move through pending statuses
- Raise at-risk and breach alerts once per ticket and escalate via Slack
- Report SLA attainment and average resolution time

Layers:
- domain: calendars, policies, the per-ticket clock
- application: clock engine, alert dispatcher, metrics service
- infrastructure: PostgreSQL persistence, YAML config hot-reload, Slack
- interfaces: REST API
"""

__version__ = "1.0.0"
