"""
FastAPI main application entry point.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from atlas.api.v1.router import api_router
from atlas.core.config import settings
from atlas.core.database import async_session_maker, engine
from atlas.core.event_handlers import register_all_handlers
from atlas.core.events import event_bus
from atlas.core.exception_handlers import register_exception_handlers
from atlas.repositories.store import SqlDeploymentStore
from atlas.services.build.build_runner import IsolatedBuildRunner
from atlas.services.deployment.instance_launcher import HardenedInstanceLauncher
from atlas.services.deployment.orchestrator import DeploymentOrchestrator
from atlas.services.deployment.port_registry import PortLeaseRegistry
from atlas.services.quota.quota_gate import QuotaGate
from atlas.services.sandbox.docker_runtime import DockerCliRuntime

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Create scheduler
scheduler = AsyncIOScheduler()

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Builds untrusted projects in isolated sandboxes and runs them as health-gated instances",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/openapi.json",
)

# Register domain exception handlers
register_exception_handlers(app)

# When allow_credentials=True, origins must be specific (not ["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-API-Key",
        "Accept",
        "Origin",
        "X-Requested-With",
    ],
    max_age=600,
)


def build_orchestrator(store, runtime, bus) -> DeploymentOrchestrator:
    """Wire the orchestrator and its collaborators from settings."""
    registry = PortLeaseRegistry()
    return DeploymentOrchestrator(
        store=store,
        gate=QuotaGate(store),
        registry=registry,
        builder=IsolatedBuildRunner(runtime),
        launcher=HardenedInstanceLauncher(runtime, registry),
        bus=bus,
    )


@app.on_event("startup")
async def startup_event():
    """
    Startup event handler.
    """
    store = SqlDeploymentStore(async_session_maker)
    runtime = DockerCliRuntime()
    orchestrator = build_orchestrator(store, runtime, event_bus)

    app.state.orchestrator = orchestrator
    app.state.quota_gate = orchestrator.gate
    app.state.port_registry = orchestrator.registry
    app.state.build_runner = orchestrator.builder
    app.state.event_bus = event_bus

    register_all_handlers(event_bus, store)
    event_bus.start()

    try:
        await runtime.ensure_network(settings.RUNNER_NETWORK)
    except Exception as e:
        logger.error(f"Could not prepare runner network '{settings.RUNNER_NETWORK}': {e}")

    try:
        await orchestrator.recover_leases()
    except Exception as e:
        logger.exception(f"Lease recovery failed: {e}")

    scheduler.add_job(orchestrator.monitor_instances, 'interval', seconds=settings.MONITOR_INTERVAL_SECONDS)
    scheduler.add_job(orchestrator.sleep_idle_instances, 'interval', seconds=settings.IDLE_SWEEP_INTERVAL_SECONDS)
    scheduler.add_job(orchestrator.gate.reset_monthly, 'interval', minutes=settings.QUOTA_ROLLOVER_INTERVAL_MINUTES)
    scheduler.add_job(orchestrator.reconcile_leases, 'interval', minutes=5)
    scheduler.start()
    logger.info("Scheduler started with monitor, idle sweep, quota rollover and lease reconciliation jobs")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Shutdown event handler.
    """
    scheduler.shutdown()
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.shutdown()
    await event_bus.stop()
    await engine.dispose()
    logger.info("Application shutdown complete")


@app.get("/api/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Health check endpoint.

    Returns:
        Health status and component checks
    """
    db_healthy = False
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    registry = getattr(app.state, "port_registry", None)
    ports = registry.stats() if registry is not None else None

    return JSONResponse(
        status_code=status.HTTP_200_OK if db_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if db_healthy else "unhealthy",
            "components": {
                "database": "healthy" if db_healthy else "unhealthy",
                "ports": "exhausted" if ports and ports["free"] == 0 else "available",
            },
            "version": settings.APP_VERSION,
        },
    )


# Include API v1 router
app.include_router(api_router, prefix="/api/v1")


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    return {
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/api/health",
    }
