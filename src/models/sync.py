"""Pydantic models for sync run responses."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.models.base import ApiBase


class SyncCountsRead(ApiBase):
    fetched: int = 0
    matched: int = 0
    persisted: int = 0
    skipped: int = 0
    failed: int = 0
    pages_failed: int = 0


class LastTouchRead(ApiBase):
    contacts: dict[str, datetime | None] = Field(default_factory=dict)
    accounts: dict[str, datetime | None] = Field(default_factory=dict)


class SyncRunRead(ApiBase):
    """Statistics of one sync run, complete or failed."""

    run_id: str
    provider: str
    state: str
    window_start: datetime
    window_end: datetime
    started_at: datetime
    finished_at: datetime | None = None
    counts: SyncCountsRead = Field(default_factory=SyncCountsRead)
    strategies: dict[str, int] = Field(default_factory=dict)
    last_touch: LastTouchRead = Field(default_factory=LastTouchRead)
    error: str | None = None


class SyncFailureRead(ApiBase):
    """Body of a 401 / 500 returned by the sync trigger."""

    error: str
    run: SyncRunRead | None = None
