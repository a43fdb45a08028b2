"""
RMA Workflow - Main Application
================================

Return Merchandise Authorization workflow engine.

Cases move through a fixed stage sequence with per-stage SLA deadlines,
automatic escalation of overdue cases, rule-based owner assignment and an
append-only audit log.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Workflow service, SLA sweeper, DTOs
- Domain: Case entity, state machine, assignment resolver
- Infrastructure: Case store, rules file, notifier, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rma_workflow.config import settings
from rma_workflow.infrastructure.database import (
    init_database, close_database, create_tables
)
from rma_workflow.rma.application import (
    WorkflowService, SLASweeper, NotificationDispatcher
)
from rma_workflow.rma.infrastructure import (
    SQLAlchemyCaseStore, InMemoryCaseStore,
    RulesConfigManager, WebhookNotifier, SweepScheduler
)
from rma_workflow.rma.interfaces import cases_router, workflow_router
from rma_workflow.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers
)
from rma_workflow.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Open the case store
    3. Load workflow rules and watch the file
    4. Wire notifier, dispatcher, service and sweeper
    5. Start the sweep scheduler

    SHUTDOWN:
    1. Stop the scheduler and rules watcher
    2. Drain pending notifications
    3. Close the notifier and database
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting RMA workflow service", extra={
        "version": settings.app_version,
        "environment": settings.environment,
        "case_store": settings.case_store_backend
    })

    if settings.case_store_backend == "sql":
        init_database()
        await create_tables()
        case_store = SQLAlchemyCaseStore()
    else:
        logger.warning("Using in-memory case store, data is lost on restart")
        case_store = InMemoryCaseStore()

    rules_manager = RulesConfigManager()
    rules_manager.load(settings.rules_config_path)
    rules_manager.start_watching()

    notifier = WebhookNotifier(
        settings.notifier_webhook_url,
        timeout_seconds=settings.notifier_timeout_seconds,
        max_retries=settings.notifier_max_retries,
    )
    dispatcher = NotificationDispatcher(notifier)

    app.state.workflow_service = WorkflowService(case_store, rules_manager, dispatcher)
    app.state.sweeper = SLASweeper(
        case_store,
        rules_manager,
        dispatcher,
        case_timeout_seconds=settings.sweep_case_timeout_seconds,
        late_write_grace_seconds=settings.sweep_late_write_grace_seconds,
    )

    scheduler = SweepScheduler(interval_seconds=settings.sweep_interval_seconds)
    if settings.sweep_interval_seconds > 0:
        await scheduler.start(app.state.sweeper.run_cycle)
    else:
        logger.info("Sweep scheduler disabled")
    app.state.scheduler = scheduler

    logger.info("RMA workflow service started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down RMA workflow service")

    await scheduler.stop()
    rules_manager.stop_watching()
    await dispatcher.drain()
    await notifier.close()

    if settings.case_store_backend == "sql":
        await close_database()

    logger.info("RMA workflow service shutdown complete")


app = FastAPI(
    title="RMA Workflow API",
    description="""
    ## Return Merchandise Authorization Workflow

    **Stages:** Under Review → Sent to CDS → CDS Approved → Replacement Shipped
    → Replacement Received → Faulty Part Returned → CDS Confirmed Return →
    Completed. Under Review and Sent to CDS may also end in Rejected.

    Every mutating call carries the case `version` last read; stale writes
    return `409 version_conflict`. Overdue cases are escalated automatically
    by the SLA sweeper. All timestamps are UTC, ISO-8601.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)
app.state.settings = settings

# === Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
register_exception_handlers(app)

# === Routers ===
app.include_router(cases_router)
app.include_router(workflow_router)


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check for load balancers and orchestrators."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "case_store": settings.case_store_backend,
            "sweep_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        }
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "RMA Workflow",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "rma_workflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
