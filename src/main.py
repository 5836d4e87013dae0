"""Activity Sync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.activity_sync.config_loader import get_sync_config, load_sync_config
from src.activity_sync.feeds.cache import FeedCache
from src.config import get_settings
from src.routers import feeds, health, sync
from src.services.activity_store import PostgresActivityRepository
from src.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("activity_sync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Activity Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    config = (
        load_sync_config(Path(settings.sync_config_path))
        if settings.sync_config_path
        else get_sync_config()
    )
    pool = await init_pool(settings)
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_s)

    app.state.sync_config = config
    app.state.http_client = http_client
    app.state.repository = PostgresActivityRepository(pool)
    app.state.feed_cache = FeedCache(
        http_client,
        ttl_seconds=config.feeds.ttl_seconds,
        max_concurrency=config.feeds.max_concurrency,
        user_agent=settings.feed_user_agent,
    )
    yield
    await http_client.aclose()
    await close_pool()
    logger.info("Activity Sync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Activity Sync API",
        description=(
            "Ingests email and calendar activity from external providers, "
            "matches it to CRM contacts and accounts, and serves curated news feeds."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)
    app.include_router(feeds.router, prefix=v1_prefix)

    return app


app = create_app()
