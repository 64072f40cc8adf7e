"""Angio Core Lab — FastAPI host for the clinical-record persistence engine.

Invariants:
    - The storage handle is created once at startup and disposed exactly once at shutdown,
      even when stopping the scheduler or the shutdown backup fails unexpectedly
    - Schema provisioned before any component is used
    - Shutdown order: stop scheduler → final manual backup (failure logged) → dispose engine
    - Global error handlers map AngioLabError → structured JSON responses
    - CORS configured from settings (not hardcoded)

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
    - uvicorn turns SIGINT/SIGTERM into lifespan shutdown, so signals take the same path
    - Components hung on app.state for collaborator routes (no global singletons)
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from angiolab.api.error_handlers import register_error_handlers
from angiolab.api.routes import health
from angiolab.config import Settings, get_settings
from angiolab.core.errors import BackupError
from angiolab.infrastructure.database import DatabaseSessionManager
from angiolab.infrastructure.observability import setup_logging
from angiolab.services.audit_log import AuditLog
from angiolab.services.backup_coordinator import BackupCoordinator
from angiolab.services.backup_scheduler import BackupScheduler
from angiolab.services.export_service import ExportService
from angiolab.services.record_store import RecordStore
from angiolab.services.schema_manager import SchemaManager

logger = logging.getLogger(__name__)


def build_components(app: FastAPI, settings: Settings, db: DatabaseSessionManager) -> None:
    """Wire every service around one storage handle and publish it on app.state."""
    schema = SchemaManager(db)
    audit = AuditLog(db)
    backups = BackupCoordinator(
        db,
        settings.backup_dir,
        max_manual_backups=settings.max_manual_backups,
        max_auto_backups=settings.max_auto_backups,
        lock_timeout=settings.backup_lock_timeout_seconds,
        schema_version=schema.schema_version,
        app_version=settings.app_version,
        audit=audit,
    )
    app.state.db = db
    app.state.schema = schema
    app.state.audit = audit
    app.state.records = RecordStore(db, audit)
    app.state.exports = ExportService(db)
    app.state.backups = backups
    app.state.scheduler = BackupScheduler(backups, settings.auto_backup_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(
        settings.log_level,
        settings.log_format,
        log_dir=settings.log_dir,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )
    db = DatabaseSessionManager(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        build_components(app, settings, db)
        await app.state.schema.provision()
        if settings.auto_backup_enabled:
            app.state.scheduler.start()
        logger.info(f"Angio Core Lab {settings.app_version} started")
        yield
    finally:
        logger.info("Angio Core Lab shutting down")
        try:
            scheduler = getattr(app.state, "scheduler", None)
            if scheduler is not None:
                await scheduler.stop()
            backups = getattr(app.state, "backups", None)
            if settings.shutdown_backup_enabled and backups is not None:
                try:
                    path = await backups.create_manual_backup()
                    logger.info(f"Shutdown backup written: {path.name}")
                except BackupError as e:
                    logger.error(
                        f"Shutdown backup failed: {e.message}", extra={"error_code": e.code},
                    )
        finally:
            await db.dispose()


app = FastAPI(
    title="Angio Core Lab", version=get_settings().app_version, lifespan=lifespan,
)

# CORS origins come from settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
register_error_handlers(app)
