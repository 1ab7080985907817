"""
Helpdesk SLA Clock Service - Main Application
==============================================

Business-hours SLA clocks for helpdesk tickets.

Modules:
- SLA Clocks: business calendars, policy selection, per-ticket clocks,
  at-risk/breach alerts and attainment metrics

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Clock engine, alert dispatcher, metrics
- Domain: Calendars, policies, clock entity
- Infrastructure: Database, YAML config, Slack, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import init_database, close_database, create_tables, get_session_maker

# SLA Module
from sla.application import AlertDispatcher, PolicyResolver, SLAClockEngine, SLAMetricsService
from sla.domain import ClockEngineConfig
from sla.infrastructure import (
    SLAConfigManager, SlackClient, SLAScheduler, unit_of_work_factory,
)
from sla.interfaces import sla_router

# Shared
from shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    validation_exception_handler,
    global_exception_handler,
)
from shared.infrastructure.logging import setup_logging, get_logger
from shared.infrastructure.grafana import get_grafana_exporter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it for changes
    4. Build the clock engine, alert dispatcher and metrics service
    5. Start the sweep and alert delivery jobs

    SHUTDOWN:
    1. Stop the clock engine, wait for a running sweep, stop the scheduler
    2. Stop the config watcher, close Slack client
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA Clock Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()
    await create_tables()
    uow_factory = unit_of_work_factory(get_session_maker())

    # Invalid calendars or policies fail startup; later bad edits are rejected by reload()
    logger.info("Loading SLA configuration")
    config_manager = SLAConfigManager(strict_calendars=True)
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    engine_config = ClockEngineConfig.from_settings(settings, config_manager.config)
    clock_engine = SLAClockEngine(uow_factory, config_manager, engine_config)
    slack_client = SlackClient()
    dispatcher = AlertDispatcher(uow_factory, slack_client)
    exporter = get_grafana_exporter()

    async def sla_sweep_job():
        """Background SLA sweep."""
        report = await clock_engine.sweep()
        await exporter.export_sweep_metrics(report)

    async def sla_alert_job():
        """Deliver pending alerts, including retries after channel failures."""
        await dispatcher.dispatch_pending()

    scheduler = SLAScheduler()
    if settings.sla_sweep_interval_seconds > 0:
        scheduler.add_job("sla_sweep", sla_sweep_job, settings.sla_sweep_interval_seconds)
        scheduler.add_job("sla_alert_delivery", sla_alert_job, settings.sla_sweep_interval_seconds)
        await scheduler.start()
    else:
        logger.info("SLA sweep disabled (sla_sweep_interval_seconds=0)")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_manager = config_manager
    app.state.clock_engine = clock_engine
    app.state.policy_resolver = PolicyResolver(config_manager)
    app.state.metrics_service = SLAMetricsService(uow_factory, config_manager)
    app.state.scheduler = scheduler

    logger.info("SLA Clock Service started successfully", extra=config_manager.get_snapshot().summary())

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Clock Service")

    clock_engine.request_stop()
    # Clocks already picked up by a sweep finish before the database goes away
    await clock_engine.wait_until_idle(settings.sla_shutdown_timeout_seconds)
    await scheduler.stop()
    config_manager.stop_watching()
    await slack_client.close()
    await close_database()

    logger.info("SLA Clock Service shutdown complete")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Build the FastAPI application; tests pass their own lifespan."""
    app = FastAPI(
        title="Helpdesk SLA Clock API",
        description="""
    ## Business-hours SLA clocks for helpdesk tickets

    Counts response and resolution time against per-team business calendars
    (timezone, weekly hours, holidays), pauses while a ticket waits on the
    requester or a vendor, and escalates at-risk and breached tickets to Slack.

    ---

    ### Endpoints

    - `POST /sla/clocks` - Start the clock of a new ticket
    - `POST /sla/clocks/{id}/status` - Apply a status change
    - `POST /sla/clocks/{id}/first-response` - Record the first agent response
    - `POST /sla/clocks/{id}/priority` - Re-select the policy
    - `GET /sla/clocks/{id}` - Clock projected to now
    - `GET /sla/policies` - Configured policies
    - `GET /sla/calendars/{id}/elapsed` - Business time between two instants
    - `GET /sla/metrics/sla` - SLA attainment
    - `GET /sla/metrics/resolution` - Average business resolution time

    ---
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan_handler
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(sla_router)

    app.add_api_route("/health", health_check, methods=["GET"], tags=["Health"], responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "sla_config": "loaded (2 calendars, 4 policies)",
                            "sla_scheduler": "running"
                        }
                    }
                }
            }
        }
    })
    app.add_api_route("/", root, methods=["GET"], tags=["Root"])
    return app


# === Health Check Endpoint ===

async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - SLA configuration status
    - Scheduler state
    """
    state = request.app.state
    config_manager = getattr(state, "config_manager", None)
    scheduler = getattr(state, "scheduler", None)

    if config_manager is not None:
        summary = config_manager.get_snapshot().summary()
        sla_config = f"loaded ({summary['calendars']} calendars, {summary['policies']} policies)"
    else:
        sla_config = "not_loaded"

    checks = {
        "sla_config": sla_config,
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
    }

    return {
        "status": "healthy" if config_manager is not None else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


async def root():
    """Root endpoint with API information."""
    return {
        "service": "Helpdesk SLA Clock Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "sla": {
                "prefix": "/sla",
                "endpoints": [
                    "POST /sla/clocks - Start a ticket's SLA clock",
                    "POST /sla/clocks/{id}/status - Apply a status change",
                    "GET /sla/clocks/{id} - Get ticket SLA clock",
                    "GET /sla/metrics/sla - SLA attainment"
                ]
            }
        }
    }


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
