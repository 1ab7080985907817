"""
SLA External Service Integrations
==================================

External services for SLA monitoring:
- YAML config file watcher (calendars, policies)
- Slack webhook notifications
- APScheduler for the background sweep and alert delivery
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import yaml
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from config import settings, AlertType, SLAType
from core import ConfigurationException
from shared.infrastructure.logging import get_logger
from sla.application import INotificationChannel, ISLAConfigProvider, describe_alert
from sla.domain import SLAAlert, SLAConfig, SLAConfigSnapshot

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path.resolve()
        super().__init__()

    def _matches(self, path: str) -> bool:
        return Path(path).resolve() == self.config_path

    def on_modified(self, event):
        """Handle file modification event."""
        if not event.is_directory and self._matches(event.src_path):
            logger.info("SLA config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    def on_created(self, event):
        self.on_modified(event)

    def on_moved(self, event):
        # Editors often save by renaming a temp file over the original
        if not event.is_directory and self._matches(event.dest_path):
            logger.info("SLA config file replaced", extra={"path": event.dest_path})
            self.config_manager.reload()


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe SLA configuration manager with hot-reload support.

    Uses watchdog to monitor file changes and reload configuration
    without restarting the service. A reload that fails validation keeps
    the previous snapshot in place.
    """

    def __init__(self, strict_calendars: bool = True):
        self._snapshot: Optional[SLAConfigSnapshot] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._strict_calendars = strict_calendars

    @classmethod
    def from_config(cls, config: SLAConfig, strict_calendars: bool = True) -> "SLAConfigManager":
        """Manager serving a fixed configuration (no file, no watching)."""
        manager = cls(strict_calendars=strict_calendars)
        manager._snapshot = manager._build_snapshot(config)
        return manager

    def load(self, path: Path) -> SLAConfigSnapshot:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is invalid
        """
        self._path = Path(path)
        try:
            snapshot = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigurationException(f"Invalid SLA config {self._path}: {e}") from e

        with self._lock:
            self._snapshot = snapshot
        logger.info("SLA configuration loaded", extra={"path": str(self._path), **snapshot.summary()})
        return snapshot

    def _build_snapshot(self, config: SLAConfig) -> SLAConfigSnapshot:
        snapshot = SLAConfigSnapshot.from_config(config, strict=self._strict_calendars)
        for calendar_id, problems in snapshot.calendar_problems.items():
            logger.warning(
                "Calendar has invalid business hours, affected days count as closed",
                extra={"calendar_id": calendar_id, "problems": problems}
            )
        return snapshot

    def _load_from_file(self, path: Path) -> SLAConfigSnapshot:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning(f"SLA config file not found: {path}, using defaults")
            return self._build_snapshot(SLAConfig())

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return self._build_snapshot(SLAConfig(**data))

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_snapshot = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValidationError, ConfigurationException) as e:
            logger.error(
                "Failed to reload SLA config, keeping previous configuration",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._snapshot = new_snapshot
        logger.info("SLA configuration reloaded successfully", extra=new_snapshot.summary())
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skips watching if:
        - File doesn't exist
        - Running in a containerized environment where inotify doesn't work
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                f"Config file doesn't exist, skipping file watch: {self._path}. "
                "Using default SLA configuration."
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching config file: {self._path}")
        except OSError as e:
            # File watching not supported (e.g., in Docker containers)
            logger.warning(
                f"File watching not available, using static config: {e}"
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_snapshot(self) -> SLAConfigSnapshot:
        """Get current configuration snapshot."""
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("SLA configuration not loaded")
        return snapshot

    @property
    def config(self) -> SLAConfig:
        """Get current configuration."""
        return self.get_snapshot().config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the notification channel.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1

        # A failure while half-open reopens immediately
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class SlackClient(INotificationChannel):
    """
    Slack webhook client with circuit breaker and retry logic.

    Handles sending structured alerts to Slack with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        default_channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        ticket_url_template: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_base_delay: float = 1.0,
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._default_channel = default_channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._ticket_url_template = ticket_url_template or settings.ticket_url_template
        self._http_client = http_client
        self._owns_client = http_client is None
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._retry_base_delay = retry_base_delay

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def build_message(self, alert: SLAAlert) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        is_breach = alert.alert_type == AlertType.BREACH

        if is_breach:
            emoji = ":rotating_light:"
            header_text = "SLA Breach"
            status_text = ":red_circle: BREACHED"
        else:
            emoji = ":warning:"
            header_text = "SLA At Risk"
            status_text = ":large_yellow_circle: AT RISK"

        ticket_url = self._ticket_url_template.format(ticket_id=alert.ticket_id)
        sla_name = "Response" if alert.sla_type == SLAType.RESPONSE else "Resolution"
        channel = alert.channels[0] if alert.channels else self._default_channel

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} {header_text}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Ticket:*\n<{ticket_url}|{alert.ticket_id}>"},
                    {"type": "mrkdwn", "text": f"*SLA:*\n{sla_name}"},
                    {"type": "mrkdwn", "text": f"*Status:*\n{status_text}"},
                    {"type": "mrkdwn", "text": f"*Escalation Level:*\n{alert.escalation_level}"},
                    {"type": "mrkdwn", "text": f"*Used:*\n{alert.percent_elapsed:.1f}% of target"},
                    {"type": "mrkdwn", "text": f"*Policy:*\n{alert.policy_id}"}
                ]
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Triggered: {alert.triggered_at.isoformat()}"
                    }
                ]
            }
        ]

        return {
            "channel": channel,
            "text": describe_alert(alert),
            "blocks": blocks
        }

    async def send_alert(self, alert: SLAAlert, max_retries: int = 3) -> bool:
        """
        Send alert to Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"ticket_id": alert.ticket_id}
            )
            return False

        message = self.build_message(alert)

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={
                            "ticket_id": alert.ticket_id,
                            "alert_type": alert.alert_type.value,
                            "sla_type": alert.sla_type.value
                        }
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )

            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={
                        "error": str(e),
                        "attempt": attempt + 1,
                        "ticket_id": alert.ticket_id
                    }
                )

            if attempt < max_retries - 1:
                await asyncio.sleep(self._retry_base_delay * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class SLAScheduler:
    """
    Wrapper for APScheduler running the SLA background jobs.

    Manages the lifecycle of the scheduler and jobs. Each job runs with
    `max_instances=1`, so a slow sweep is never overlapped by the next one.
    """

    def __init__(self):
        self._jobs: List[Tuple[str, Callable[[], Awaitable[Any]], int]] = []
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    def add_job(self, job_id: str, job_func: Callable[[], Awaitable[Any]], interval_seconds: int) -> None:
        """Register an interval job; takes effect on the next start()."""
        self._jobs.append((job_id, job_func, interval_seconds))

    async def start(self) -> None:
        """Start the scheduler with the registered jobs."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        for job_id, job_func, interval_seconds in self._jobs:
            self._scheduler.add_job(
                job_func,
                "interval",
                seconds=interval_seconds,
                id=job_id,
                name=job_id.replace("_", " ").title(),
                misfire_grace_time=interval_seconds,
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"jobs": {job_id: seconds for job_id, _, seconds in self._jobs}}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
