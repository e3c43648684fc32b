"""
Assignment Orchestrator - Main Application
===========================================

Keeps maintenance tickets moving toward resolution: reassigns
unacknowledged work, escalates SLA breaches through the five-tier staff
hierarchy, retires inactive staff and fast-tracks crisis tickets.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Orchestrator, services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, config watcher, notification sinks, scheduler
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import (
    close_database,
    create_tables,
    get_session_maker,
    init_database,
)

# Assignment module
from assignment.application import (
    AssignmentOrchestrator,
    AssignmentService,
    IEscalationConfigProvider,
    INotificationSink,
    NotificationDispatcher,
    NotificationFactory,
    utc_now,
)
from assignment.infrastructure import (
    DatabaseNotificationSink,
    EscalationConfigManager,
    OrchestratorScheduler,
    SQLAlchemyUnitOfWork,
    WebhookNotificationSink,
)
from assignment.interfaces import assignment_router

# Logging and metrics
from shared.infrastructure.logging import get_logger, setup_logging
from shared.infrastructure.grafana import get_grafana_exporter, init_grafana_exporter
from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)

logger = get_logger(__name__)

# Global service instances
config_manager: Optional[EscalationConfigManager] = None
scheduler: Optional[OrchestratorScheduler] = None
webhook_sink: Optional[WebhookNotificationSink] = None


async def drain_ticks(
    orchestrator: AssignmentOrchestrator,
    cancel_event: asyncio.Event,
    timeout: float
) -> bool:
    """
    Abort the tick in flight and wait for it to let go of the database.

    The tick stops after its current record, so no transaction is cut short.
    Returns False when the tick did not finish within ``timeout``.
    """
    cancel_event.set()
    try:
        await asyncio.wait_for(orchestrator.wait_idle(), timeout)
    except asyncio.TimeoutError:
        logger.error("Tick still running at shutdown", extra={"timeout_seconds": timeout})
        return False
    return True


def build_services(
    session_maker,
    config_provider: IEscalationConfigProvider,
    sinks: Optional[List[INotificationSink]] = None,
    clock=utc_now
) -> Tuple[AssignmentOrchestrator, AssignmentService]:
    """
    Wire the orchestrator and assignment service to a session factory.

    The notifications table is always a sink; extra sinks are appended.
    """
    def uow_factory():
        return SQLAlchemyUnitOfWork(session_maker)

    dispatcher = NotificationDispatcher(
        [DatabaseNotificationSink(uow_factory)] + list(sinks or [])
    )
    notification_factory = NotificationFactory(settings.ticket_link_base)

    orchestrator = AssignmentOrchestrator(
        uow_factory, config_provider, dispatcher,
        clock=clock, notification_factory=notification_factory
    )
    service = AssignmentService(
        uow_factory, config_provider, dispatcher,
        clock=clock, notification_factory=notification_factory
    )
    return orchestrator, service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load escalation policy (invalid file aborts startup)
    4. Wire orchestrator and assignment service
    5. Start the tick scheduler

    SHUTDOWN:
    1. Stop the scheduler and abort the tick in flight between records
    2. Stop the config watcher
    3. Close webhook client and database connections once the tick is done
    """
    global config_manager, scheduler, webhook_sink

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Assignment Orchestrator", extra={"version": settings.app_version})

    init_database()
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    config_manager = EscalationConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    extra_sinks: List[INotificationSink] = []
    if settings.notification_webhook_url:
        webhook_sink = WebhookNotificationSink(settings.notification_webhook_url)
        extra_sinks.append(webhook_sink)

    orchestrator, service = build_services(get_session_maker(), config_manager, extra_sinks)
    app.state.orchestrator = orchestrator
    app.state.assignment_service = service
    app.state.config_manager = config_manager
    shutdown_event = asyncio.Event()
    app.state.shutdown_event = shutdown_event

    if settings.grafana_host and settings.grafana_api_key and settings.grafana_instance_id:
        init_grafana_exporter(
            host=settings.grafana_host,
            api_key=settings.grafana_api_key,
            instance_id=settings.grafana_instance_id
        )

    async def tick_job():
        """Background orchestration tick."""
        report = await orchestrator.run_tick(cancel_event=shutdown_event)
        exporter = get_grafana_exporter()
        if exporter and exporter.is_enabled() and not report.skipped:
            await exporter.export_tick_metrics(report.to_dict())

    if settings.tick_interval_seconds > 0:
        scheduler = OrchestratorScheduler(interval_seconds=settings.tick_interval_seconds)
        await scheduler.start(tick_job)
    else:
        logger.info("In-process scheduler disabled, ticks run via POST /assignments/tick")

    logger.info("Assignment Orchestrator started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Assignment Orchestrator")

    if scheduler:
        await scheduler.stop()
        scheduler = None

    await drain_ticks(orchestrator, shutdown_event, settings.tick_shutdown_timeout_seconds)

    if config_manager:
        config_manager.stop_watching()

    if webhook_sink:
        await webhook_sink.close()
        webhook_sink = None

    await close_database()

    logger.info("Assignment Orchestrator shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Assignment Orchestrator API",
    description="""
    ## Ticket Assignment & Escalation Orchestrator

    A periodic tick keeps maintenance tickets moving:

    1. **Expire inactive staff** - staff past their auto-offline time go offline
    2. **Reassign unacknowledged tickets** - another level-1 staff member gets
       the ticket, or it escalates to L2 when nobody is free
    3. **Escalate SLA breaches** - acknowledged, breached tickets climb one level
       per escalation window, up to L5
    4. **Assign crisis tickets** - the most senior available responder is
       assigned and the ticket enters at L5

    ### Escalation windows

    | Level | Window | Notified role |
    |-------|--------|---------------|
    | L1 | 10 min | field_staff |
    | L2 | 10 min | ops_supervisor |
    | L3 | 15 min | admin |
    | L4 | 30 min | admin |
    | L5 | 60 min | admin |
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(assignment_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "escalation_config": "loaded",
                        "scheduler": "running",
                        "tick": "idle",
                        "webhook": "not_configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """Health check endpoint for load balancers and orchestrators."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    manager = getattr(request.app.state, "config_manager", None)

    checks = {
        "escalation_config": "loaded" if manager or orchestrator else "not_loaded",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "tick": "running" if orchestrator and orchestrator.is_running else "idle",
        "webhook": "configured" if settings.notification_webhook_url else "not_configured",
    }

    return {
        "status": "healthy" if orchestrator else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Assignment Orchestrator",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "assignment": {
                "prefix": "/assignments",
                "endpoints": [
                    "POST /assignments/tick - Run one orchestration tick",
                    "POST /assignments/tickets/{id}/acknowledge - Acknowledge assignment",
                    "POST /assignments/tickets/{id}/start - Start work",
                    "POST /assignments/tickets/{id}/photos - Upload completion photos",
                    "POST /assignments/tickets/{id}/close - Close ticket",
                    "POST /assignments/tickets/{id}/assign - Manual assignment",
                    "GET /assignments/tickets/{id}/timeline - Assignment history"
                ]
            }
        }
    }


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
