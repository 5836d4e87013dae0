"""Load and validate the activity sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  The app
loads it once at startup (``get_sync_config()``) and hands the resulting
object to each service it constructs; services never reach for it
themselves.

Usage::

    from src.activity_sync.config_loader import load_sync_config

    config = load_sync_config()
    config.sync.window_days        # 30
    config.feeds.ttl_seconds       # 900
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("activity_sync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class RunConfig:
    """Shape of a single sync run."""

    window_days: int = 30
    slice_days: int = 7
    page_size: int = 100
    max_concurrency: int = 4
    persist_unmatched: bool = False


@dataclass
class RetryConfig:
    """Bounded exponential backoff for Transient / RateLimited failures."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    backoff: float = 2.0
    max_delay_s: float = 8.0

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based).

        A provider-supplied Retry-After wins but is still capped.
        """
        if retry_after is not None:
            return min(retry_after, self.max_delay_s)
        return min(self.base_delay_s * (self.backoff ** attempt), self.max_delay_s)


@dataclass
class MatchingConfig:
    min_first_name_length: int = 2


@dataclass
class FeedSource:
    """One entry of the curated feed catalog."""

    id: str
    label: str
    url: str
    topics: list[str] = field(default_factory=list)


@dataclass
class FeedsConfig:
    ttl_seconds: int = 900
    max_concurrency: int = 4
    default_limit: int = 50
    catalog: list[FeedSource] = field(default_factory=list)

    def source(self, source_id: str) -> FeedSource | None:
        for feed in self.catalog:
            if feed.id == source_id:
                return feed
        return None


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:  Config schema version string.
        sync:     Run shape (window, slicing, paging, concurrency).
        retry:    Backoff policy for retryable provider failures.
        matching: Matcher thresholds.
        feeds:    Feed cache settings and the curated catalog.
    """

    version: str = "1.0"
    sync: RunConfig = field(default_factory=RunConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    feeds: FeedsConfig = field(default_factory=FeedsConfig)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing sections fall back to defaults; present values must have the
    right type and range.  All problems are collected and reported together.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: Any, cast: type, minimum: float, where: str) -> Any:
        value = section.get(key, default)
        try:
            value = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default
        if value < minimum:
            errors.append(f"{where}.{key} = {value} must be >= {minimum}")
        return value

    def _flag(section: dict, key: str, default: bool, where: str) -> bool:
        value = section.get(key, default)
        if not isinstance(value, bool):
            errors.append(f"{where}.{key} must be true or false, got {value!r}")
            return default
        return value

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Run shape ──
    s = _section("sync")
    run = RunConfig(
        window_days=_number(s, "window_days", 30, int, 1, "sync"),
        slice_days=_number(s, "slice_days", 7, int, 1, "sync"),
        page_size=_number(s, "page_size", 100, int, 1, "sync"),
        max_concurrency=_number(s, "max_concurrency", 4, int, 1, "sync"),
        persist_unmatched=_flag(s, "persist_unmatched", False, "sync"),
    )
    if run.page_size > 500:
        errors.append(f"sync.page_size = {run.page_size} exceeds provider maximum of 500")

    # ── Retry ──
    r = _section("retry")
    retry = RetryConfig(
        max_attempts=_number(r, "max_attempts", 3, int, 1, "retry"),
        base_delay_s=_number(r, "base_delay_s", 0.5, float, 0, "retry"),
        backoff=_number(r, "backoff", 2.0, float, 1, "retry"),
        max_delay_s=_number(r, "max_delay_s", 8.0, float, 0, "retry"),
    )

    # ── Matching ──
    m = _section("matching")
    matching = MatchingConfig(
        min_first_name_length=_number(m, "min_first_name_length", 2, int, 1, "matching"),
    )

    # ── Feeds ──
    f = _section("feeds")
    catalog: list[FeedSource] = []
    seen_ids: set[str] = set()
    for i, entry in enumerate(f.get("catalog") or []):
        if not isinstance(entry, dict):
            errors.append(f"feeds.catalog[{i}] must be a mapping")
            continue
        missing = [k for k in ("id", "label", "url") if not entry.get(k)]
        if missing:
            errors.append(f"feeds.catalog[{i}] is missing {', '.join(missing)}")
            continue
        if entry["id"] in seen_ids:
            errors.append(f"feeds.catalog[{i}] duplicates id '{entry['id']}'")
            continue
        seen_ids.add(entry["id"])
        catalog.append(
            FeedSource(
                id=str(entry["id"]),
                label=str(entry["label"]),
                url=str(entry["url"]),
                topics=[str(t) for t in entry.get("topics") or []],
            )
        )
    feeds = FeedsConfig(
        ttl_seconds=_number(f, "ttl_seconds", 900, int, 0, "feeds"),
        max_concurrency=_number(f, "max_concurrency", 4, int, 1, "feeds"),
        default_limit=_number(f, "default_limit", 50, int, 1, "feeds"),
        catalog=catalog,
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        sync=run,
        retry=retry,
        matching=matching,
        feeds=feeds,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{target} must contain a mapping at the top level")
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


@lru_cache
def get_sync_config() -> SyncConfig:
    """Return the bundled config, loading it on first call (app wiring only)."""
    return load_sync_config()
