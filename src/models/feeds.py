"""Pydantic models for the feed digest endpoint."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.models.base import ApiBase


class FeedItemRead(ApiBase):
    title: str
    link: str
    summary: str = ""
    published_at: datetime | None = None
    source: str = ""
    feed_id: str = ""
    categories: list[str] = Field(default_factory=list)
    author: str = ""
    image_url: str | None = None


class FeedSourceRead(ApiBase):
    id: str
    label: str
    url: str
    topics: list[str] = Field(default_factory=list)


class FeedDigestRead(ApiBase):
    items: list[FeedItemRead] = Field(default_factory=list)
    sources: list[FeedSourceRead] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
