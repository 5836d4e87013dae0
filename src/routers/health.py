"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import asyncpg
from fastapi import APIRouter

from src.config import get_settings
from src.services.database import ping

router = APIRouter(tags=["system"])
logger = logging.getLogger("activity_sync.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check.
    """
    settings = get_settings()
    db_ok = False
    try:
        await ping()
        db_ok = True
    except (
        RuntimeError, OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError
    ) as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
