"""Health & Readiness Probes — liveness and readiness of the persistence engine.

Invariants:
    - GET /health/ always returns 200 if the process is up (liveness)
    - GET /health/ready returns 503 if the database is unreachable or the
      backup directory is not writable (readiness)

Design Decisions:
    - Components read from app.state, set by the lifespan (no module-level db handle)
    - Backup dir probe runs in a worker thread: filesystem IO stays off the event loop
"""

import asyncio
import logging
import os
from pathlib import Path

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from angiolab.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("/", status_code=status.HTTP_200_OK)
async def health_check():
    """Basic liveness probe. Returns 200 if the process is up."""
    return {
        "status": "healthy",
        "service": "angio-core-lab",
        "version": get_settings().app_version,
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness probe — database connectivity and backup directory."""
    db = getattr(request.app.state, "db", None)
    coordinator = getattr(request.app.state, "backups", None)

    db_ok = await db.health_check() if db else False
    backups_ok = (
        await asyncio.to_thread(_is_writable_dir, coordinator.backup_dir)
        if coordinator else False
    )
    checks = {
        "database": "healthy" if db_ok else "unavailable",
        "backups": "healthy" if backups_ok else "unwritable",
    }
    if not (db_ok and backups_ok):
        logger.warning(f"Readiness check failed: {checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}


def _is_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK)
