"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

import httpx
from fastapi import Depends, Header, HTTPException, Request

from src.activity_sync.base import ProviderCredential
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.feeds.cache import FeedCache
from src.activity_sync.sync.store import ActivityRepository
from src.config import Settings, get_settings


async def get_credential(
    authorization: Annotated[str | None, Header()] = None,
    x_provider_token_expires_at: Annotated[str | None, Header()] = None,
) -> ProviderCredential:
    """Build the provider credential from the request headers.

    ``Authorization: Bearer <token>`` carries the provider access token and
    ``X-Provider-Token-Expires-At`` its optional ISO-8601 expiry.  A missing
    or expired token is rejected by the orchestrator before any provider
    call, so the 401 still carries the run record.
    """
    token = ""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()

    expires_at = None
    if x_provider_token_expires_at:
        try:
            expires_at = datetime.fromisoformat(x_provider_token_expires_at.replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(status_code=401, detail="Invalid X-Provider-Token-Expires-At")
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

    return ProviderCredential(access_token=token, expires_at=expires_at)


def get_repository(request: Request) -> ActivityRepository:
    return request.app.state.repository


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_feed_cache(request: Request) -> FeedCache:
    return request.app.state.feed_cache


def get_engine_config(request: Request) -> SyncConfig:
    return request.app.state.sync_config


# Annotated shortcuts for route signatures
Credential = Annotated[ProviderCredential, Depends(get_credential)]
Repository = Annotated[ActivityRepository, Depends(get_repository)]
HttpClient = Annotated[httpx.AsyncClient, Depends(get_http_client)]
FeedCacheDep = Annotated[FeedCache, Depends(get_feed_cache)]
EngineConfig = Annotated[SyncConfig, Depends(get_engine_config)]
AppSettings = Annotated[Settings, Depends(get_settings)]
