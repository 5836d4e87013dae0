"""Feed digest endpoint over the curated feed catalog."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import EngineConfig, FeedCacheDep
from src.models.feeds import FeedDigestRead

router = APIRouter(prefix="/feeds", tags=["feeds"])


@router.get("", response_model=FeedDigestRead)
async def list_feed_items(
    cache: FeedCacheDep,
    config: EngineConfig,
    limit: int | None = Query(default=None, ge=1, le=200),
    keywords: str | None = Query(default=None, description="Comma-separated; any may match"),
    source: str | None = Query(default=None, description="Catalog feed id"),
) -> Any:
    feeds = config.feeds.catalog
    if source:
        feed = config.feeds.source(source)
        if feed is None:
            raise HTTPException(status_code=404, detail=f"Unknown feed source '{source}'")
        feeds = [feed]

    terms = [k.strip() for k in keywords.split(",") if k.strip()] if keywords else []
    digest = await cache.get_many(
        feeds,
        limit=limit or config.feeds.default_limit,
        keywords=terms,
    )
    return {
        "items": [asdict(i) for i in digest.items],
        "sources": [asdict(f) for f in feeds],
        "failed": digest.failed,
    }
