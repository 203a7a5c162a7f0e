"""StaffHub FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

from sqlalchemy.exc import SQLAlchemyError

from staffhub.config import settings
from staffhub.database import async_engine, AsyncSessionLocal
from staffhub.services.audit_service import emit_to_file_sink, system_event

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _system_event(action: str, details: dict | None = None) -> None:
    """Fire a SYSTEM-category audit event (non-blocking)."""
    emit_to_file_sink(system_event(action, details))


scheduler = AsyncIOScheduler()


async def run_audit_retention_purge():
    """Purge expired audit events from every store."""
    from staffhub.services.audit_retention import purge_audit_retention

    _system_event("system.scheduler.audit_retention_purge", {"status": "started"})
    try:
        summary = await purge_audit_retention(
            settings.AUDIT_STORAGE_PATH,
            AsyncSessionLocal,
        )
        logger.info("Audit retention purge: %s", summary)
        _system_event("system.scheduler.audit_retention_purge", {
            "status": "completed", **summary,
        })
    except (OSError, SQLAlchemyError) as e:
        logger.error("Audit retention purge failed: %s", e)
        _system_event("system.scheduler.audit_retention_purge", {
            "status": "failed", "error": str(e),
        })


async def sync_catalog_on_startup() -> None:
    """Make sure every enumerated permission has a catalog row."""
    from staffhub.services.permission_catalog import sync_permission_catalog

    async with AsyncSessionLocal() as db:
        summary = await sync_permission_catalog(db)
    logger.info("Permission catalog synced: %s", summary)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting StaffHub API...")
    _system_event("system.startup")

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
        await sync_catalog_on_startup()
    except SQLAlchemyError as e:
        logger.error("Database connection failed: %s", e)

    # Schedule jobs
    scheduler.add_job(run_audit_retention_purge, "interval", hours=24, id="audit_retention_purge")
    scheduler.start()
    logger.info("Scheduled jobs started (audit retention)")

    logger.info("StaffHub API started successfully")
    yield

    # Shutdown
    _system_event("system.shutdown")
    scheduler.shutdown()
    await async_engine.dispose()
    logger.info("StaffHub API shut down")


app = FastAPI(
    title="StaffHub",
    description="Multi-venue staff app: venue-scoped permissions, channels and messaging",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Read-access audit middleware for sensitive endpoints
from staffhub.middleware.audit_middleware import AuditReadAccessMiddleware

SENSITIVE_PREFIXES = [
    "/api/admin/audit-log",
    "/api/admin/users",
    "/api/venue-permissions",
    "/api/directory",
]
app.add_middleware(
    AuditReadAccessMiddleware,
    emit=emit_to_file_sink,
    prefixes=SENSITIVE_PREFIXES,
)

# Import and register routers
from staffhub.routes import admin, auth, channels, directory, messaging, rosters, venue_permissions

app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(venue_permissions.router)
app.include_router(channels.router)
app.include_router(messaging.router)
app.include_router(directory.router)
app.include_router(rosters.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "StaffHub API", "version": "1.0.0"}
