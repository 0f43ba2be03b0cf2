"""
SLA Engine - Main Application
==============================

SLA matching and business-hours tracking service.

Modules:
- SLA: Rule matching, tracking state machine, escalations and sweep

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, hooks and DTOs
- Domain: Entities, value objects and the business-hours calculator
- Infrastructure: Database, cache, catalog watcher, external clients
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import (
    init_database, close_database, create_tables, get_engine, get_session_maker,
)

# SLA Module
from sla.application import SlaSweepJob
from sla.infrastructure.external import SlaCatalogManager, SlaScheduler
from sla.infrastructure.events import SlaEventConsumer
from sla.infrastructure.wiring import init_runtime
from sla.interfaces import sla_router

# Logging
from shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Build the SLA runtime (cache, dispatcher, ticket directory)
    4. Apply the YAML catalog and watch it for changes
    5. Start the lifecycle event consumer
    6. Start the SLA sweep scheduler

    SHUTDOWN:
    Everything above, in reverse order.
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting SLA Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()
    session_maker = get_session_maker()

    # Create tables (for development - use migrations in production)
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    runtime = init_runtime()

    logger.info("Loading SLA catalog", extra={"path": str(settings.sla_catalog_path)})
    catalog_manager = SlaCatalogManager(lambda catalog: runtime.apply_catalog(session_maker, catalog))
    try:
        await catalog_manager.load(settings.sla_catalog_path)
        catalog_manager.start_watching()
    except ApplicationException as e:
        logger.error("SLA catalog not applied", extra={"error": e.message, "details": e.details})
    except Exception as e:
        logger.error("SLA catalog not applied", extra={"error": str(e)}, exc_info=True)

    event_consumer = SlaEventConsumer(session_maker, runtime.services)
    event_consumer.start()

    sweep_job = SlaSweepJob(session_maker, runtime.services)
    sla_scheduler = SlaScheduler()
    await sla_scheduler.start(sweep_job.run)

    app.state.runtime = runtime
    app.state.catalog_manager = catalog_manager
    app.state.event_consumer = event_consumer
    app.state.sweep_job = sweep_job
    app.state.sla_scheduler = sla_scheduler

    logger.info("SLA Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Engine")

    await sla_scheduler.stop()
    await event_consumer.stop()
    catalog_manager.stop_watching()
    await runtime.close()
    await close_database()

    logger.info("SLA Engine shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SLA Engine API",
    description="""
    ## SLA Matching and Business-Hours Tracking

    Selects an SLA rule for each ticket, measures elapsed **working** minutes
    against business-hours calendars, and escalates as thresholds are crossed.

    ---

    ### Tracking

    - `POST /sla/tickets/{id}/tracking` - Start tracking
    - `GET /sla/tickets/{id}/status` - Current status
    - `POST /sla/tickets/{id}/pause` / `resume` / `stop` / `reopen`
    - `POST /sla/events` - Publish a ticket lifecycle event

    ### Monitoring

    - `POST /sla/sweep` - Run the escalation sweep now
    - `GET /sla/breached`, `GET /sla/approaching-breach`, `GET /sla/metrics`

    ### Status zones

    | Elapsed | Status | Zone |
    |---------|--------|------|
    | < min TAT | on_track | green |
    | >= min TAT | warning | yellow |
    | >= avg TAT | critical | orange |
    | >= max TAT | breached | red |
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

# === Custom Middleware (from shared) ===
from shared.api.middleware import (
    RequestContextMiddleware,
    application_exception_handler,
    global_exception_handler
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service health",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "sla_catalog": "watching",
                        "sla_scheduler": "running",
                        "event_consumer": "running (0 queued)"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports database connectivity, catalog watcher, scheduler and
    event consumer state. Status is ``degraded`` when the database
    cannot be reached.
    """
    state = request.app.state
    checks = {}

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as e:
        checks["database"] = f"error: {str(e)}"

    catalog_manager = getattr(state, "catalog_manager", None)
    if catalog_manager is None or catalog_manager.catalog is None:
        checks["sla_catalog"] = "not_loaded"
    else:
        checks["sla_catalog"] = "watching" if catalog_manager.is_watching else "loaded"

    scheduler = getattr(state, "sla_scheduler", None)
    checks["sla_scheduler"] = "running" if scheduler and scheduler.is_running else "stopped"

    consumer = getattr(state, "event_consumer", None)
    checks["event_consumer"] = (
        f"running ({consumer.queue_size} queued)" if consumer and consumer.is_running else "stopped"
    )

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "SLA Engine",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )
