"""Feed cache — TTL plus conditional revalidation for polled feeds.

Per feed URL the cache keeps the parsed items, the ETag / Last-Modified
validators and the time of the last successful fetch.

    get(feed) within TTL         → cached items, no network call
    get(feed) after TTL          → conditional GET with stored validators
        304 Not Modified         → same items, fetched-at refreshed
        200 OK                   → reparse, replace items and validators

``get_many`` fans out over several feeds with bounded concurrency and merges
them into one deduplicated, newest-first digest.  A feed that fails is
reported by id; the others still contribute.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from src.activity_sync.config_loader import FeedSource
from src.activity_sync.errors import ProviderError, classify_response, classify_transport_error
from src.activity_sync.feeds.parser import FeedItem, matches_keywords, parse_feed

logger = logging.getLogger("activity_sync.feeds.cache")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def canonical_link(url: str) -> str:
    """Normalize an article URL for dedup.

    Lower-cases scheme and host, drops a leading ``www.``, the fragment,
    ``utm_*`` tracking parameters and a trailing slash.
    """
    parts = urlsplit(url.strip())
    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
         if not k.lower().startswith("utm_")]
    )
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), host, path, query, ""))


def feed_item_key(item: FeedItem) -> str:
    """Dedup key: canonical link, else title|source|published."""
    if item.link:
        return canonical_link(item.link)
    published = item.published_at.isoformat() if item.published_at else ""
    return f"{item.title.strip().lower()}|{item.source}|{published}"


@dataclass
class CacheEntry:
    items: list[FeedItem]
    fetched_at: float
    etag: str | None = None
    last_modified: str | None = None


@dataclass
class FeedDigest:
    """Merged result across feeds.

    Attributes:
        items:  Deduplicated items, newest first, truncated to the limit.
        failed: Ids of feeds that could not be fetched or parsed.
    """

    items: list[FeedItem] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class FeedCache:
    """In-process feed cache shared by every request of the app.

    Usage::

        cache = FeedCache(http_client, ttl_seconds=900)
        items = await cache.get(feed)
        digest = await cache.get_many(config.feeds.catalog, limit=50)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ttl_seconds: float = 900,
        max_concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
        user_agent: str | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            http_client:     Shared httpx client; its timeout bounds every fetch.
            ttl_seconds:     Age below which a cached feed is served as-is.
            max_concurrency: Simultaneous feed fetches in get_many().
            clock:           Monotonic seconds; injected for tests.
            user_agent:      User-Agent header for feed requests.
        """
        self._http = http_client
        self._ttl = ttl_seconds
        self._max_concurrency = max_concurrency
        self._clock = clock
        self._user_agent = user_agent
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def entry(self, url: str) -> CacheEntry | None:
        return self._entries.get(url)

    async def get(self, feed: FeedSource) -> list[FeedItem]:
        """Return the feed's items, fetching only when the cached copy is stale.

        Concurrent calls for the same URL share one fetch.

        Raises:
            ProviderError: The fetch failed (transport, status) with no
                           usable revalidation.
            ParseError:    The body is not a parseable feed.
        """
        lock = self._locks.setdefault(feed.url, asyncio.Lock())
        async with lock:
            entry = self._entries.get(feed.url)
            if entry is not None and self._clock() - entry.fetched_at < self._ttl:
                return list(entry.items)
            return await self._refresh(feed, entry)

    async def _refresh(self, feed: FeedSource, entry: CacheEntry | None) -> list[FeedItem]:
        headers: dict[str, str] = {}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        if entry is not None:
            if entry.etag:
                headers["If-None-Match"] = entry.etag
            if entry.last_modified:
                headers["If-Modified-Since"] = entry.last_modified

        try:
            response = await self._http.get(feed.url, headers=headers, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, "feed") from exc

        if response.status_code == 304:
            if entry is None:
                raise ProviderError(
                    f"Feed {feed.id}: 304 without a cached copy", provider="feed", status_code=304
                )
            entry.fetched_at = self._clock()
            logger.debug("Feed %s: not modified", feed.id)
            return list(entry.items)

        error = classify_response(response, "feed")
        if error is not None:
            raise error

        items = parse_feed(response.content, feed)
        self._entries[feed.url] = CacheEntry(
            items=items,
            fetched_at=self._clock(),
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )
        logger.info("Feed %s: refreshed, %d items", feed.id, len(items))
        return list(items)

    async def get_many(
        self,
        feeds: list[FeedSource],
        limit: int,
        keywords: list[str] | None = None,
    ) -> FeedDigest:
        """Fetch several feeds and merge them into one digest.

        Args:
            feeds:    Catalog entries to read.
            limit:    Maximum number of items returned.
            keywords: Optional filter; an item must contain at least one.

        Returns:
            FeedDigest with deduplicated, newest-first items and failed ids.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(feed: FeedSource) -> list[FeedItem]:
            async with semaphore:
                return await self.get(feed)

        results = await asyncio.gather(*(_one(f) for f in feeds), return_exceptions=True)

        digest = FeedDigest()
        seen: set[str] = set()
        merged: list[FeedItem] = []
        for feed, result in zip(feeds, results):
            if isinstance(result, ProviderError):
                logger.warning("Feed %s failed: %s", feed.id, result)
                digest.failed.append(feed.id)
                continue
            if isinstance(result, BaseException):
                raise result
            for item in result:
                if keywords and not matches_keywords(item, keywords):
                    continue
                key = feed_item_key(item)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(item)

        merged.sort(key=lambda i: i.published_at or _EPOCH, reverse=True)
        digest.items = merged[: max(0, limit)]
        return digest
