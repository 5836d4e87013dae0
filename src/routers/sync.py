"""Sync trigger endpoint: run one provider sync and return its statistics."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from src.activity_sync.adapters import get_adapter
from src.activity_sync.errors import CredentialError
from src.activity_sync.sync.orchestrator import SyncOrchestrator, SyncRunFailed
from src.dependencies import AppSettings, Credential, EngineConfig, HttpClient, Repository
from src.models.base import ErrorDetail
from src.models.sync import SyncFailureRead, SyncRunRead

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("activity_sync.api.sync")


@router.post(
    "/{provider}",
    response_model=SyncRunRead,
    responses={
        401: {"model": SyncFailureRead},
        404: {"model": ErrorDetail},
        500: {"model": SyncFailureRead},
    },
)
async def trigger_sync(
    provider: str,
    credential: Credential,
    repository: Repository,
    http_client: HttpClient,
    config: EngineConfig,
    settings: AppSettings,
) -> Any:
    """Run a sync for ``provider`` over the trailing window.

    Returns 200 with the run statistics, including partial successes.
    A rejected or expired credential yields 401 and an unreachable store
    yields 500; both bodies carry the statistics gathered before the failure.
    """
    try:
        adapter_cls = get_adapter(provider)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")

    api_bases = {
        "gmail": settings.gmail_api_base,
        "google_calendar": settings.calendar_api_base,
    }
    adapter = adapter_cls(http_client, api_bases[provider])
    orchestrator = SyncOrchestrator(adapter, repository, config)

    try:
        run = await orchestrator.run(credential)
    except SyncRunFailed as exc:
        status = 401 if isinstance(exc.cause, CredentialError) else 500
        logger.warning("Sync %s failed (%d): %s", provider, status, exc.cause)
        return JSONResponse(
            status_code=status,
            content=jsonable_encoder({"error": str(exc.cause), "run": exc.run.to_dict()}),
        )
    return run.to_dict()
