"""
Configuration Module
====================

Application settings and configuration management using Pydantic.

Runtime settings come from environment variables (or `.env`); SLA calendars
and policies are administrative configuration and live in the YAML file
pointed to by `sla_config_path`.
"""

from enum import Enum, IntEnum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA calendars/policies YAML file"
    )
    sla_sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between SLA clock sweeps (0 disables the worker)",
        ge=0
    )
    sla_sweep_concurrency: int = Field(
        default=8,
        description="Clocks flushed in parallel during a sweep",
        ge=1,
        le=256
    )
    sla_sweep_batch_size: int = Field(
        default=200,
        description="Clock ids fetched per page during a sweep",
        ge=1
    )
    sla_lock_timeout_seconds: float = Field(
        default=5.0,
        description="Bounded wait for the per-clock lock",
        gt=0,
        le=60
    )
    sla_shutdown_timeout_seconds: float = Field(
        default=30.0,
        description="How long shutdown waits for a running sweep",
        ge=0
    )
    sla_at_risk_threshold_percent: Optional[int] = Field(
        default=None,
        description="Overrides the YAML at-risk threshold (percent of target elapsed)",
        ge=1,
        le=99
    )
    sla_shard_index: int = Field(default=0, description="Sweep shard handled by this worker", ge=0)
    sla_shard_count: int = Field(default=1, description="Total number of sweep shards", ge=1)

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for notifications"
    )
    slack_channel: str = Field(
        default="#helpdesk-sla",
        description="Slack channel for SLA notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    ticket_url_template: str = Field(
        default="https://helpdesk.example.com/tickets/{ticket_id}",
        description="Link used in notifications"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-0.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "testing", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_sharding(self) -> "Settings":
        """Ensure the shard index addresses an existing shard."""
        if self.sla_shard_index >= self.sla_shard_count:
            raise ValueError("sla_shard_index must be lower than sla_shard_count")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(IntEnum):
    """Ticket priority levels (1 is the most urgent)."""
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


class TicketStatus(str, Enum):
    """Ticket workflow statuses."""
    NEW = "New"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    PENDING_INFO = "Pending Info"
    PENDING_VENDOR = "Pending Vendor"
    SCHEDULED = "Scheduled"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class SLAType(str, Enum):
    """Types of SLA clocks."""
    RESPONSE = "response"
    RESOLUTION = "resolution"


class AlertType(str, Enum):
    """SLA alert types."""
    AT_RISK = "at_risk"
    BREACH = "breach"


class SLAState(str, Enum):
    """SLA status states."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    MET = "met"


class ClockState(str, Enum):
    """Per-ticket clock states."""
    RUNNING = "running"
    PAUSED = "paused"


# ========== Sets for validation ==========

VALID_PRIORITIES = [p.value for p in Priority]

# Resolved/closed tickets always stop accruing, whatever the pause set says.
TERMINAL_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})

DEFAULT_PAUSE_STATUSES = frozenset({
    TicketStatus.PENDING_INFO,
    TicketStatus.PENDING_VENDOR,
    TicketStatus.SCHEDULED,
})

# Entering any of these means an agent has engaged with the ticket.
DEFAULT_RESPONSE_MET_STATUSES = frozenset(
    s for s in TicketStatus if s not in (TicketStatus.NEW, TicketStatus.ASSIGNED)
)

DEFAULT_AT_RISK_THRESHOLD_PERCENT = 80
