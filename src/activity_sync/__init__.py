"""Cross-channel activity sync engine.

Ingests email and calendar records from external providers, matches them to
canonical CRM contacts and accounts, and persists them idempotently while
keeping per-entity last-touch timestamps current.

Subpackages:
    adapters/ — Provider adapters (Gmail, Google Calendar)
    sync/     — Run orchestration, retry, dedup, repository and writer
    feeds/    — RSS / Atom parsing and the TTL + revalidation feed cache

Core modules:
    base          — ProviderAdapter ABC and canonical data models
    errors        — Error taxonomy and HTTP response classification
    directory     — Per-run email → contact index
    matcher       — Alias-then-name record matching
    config_loader — Load/validate sync_config.yaml
"""

from src.activity_sync.base import (
    CanonicalAccount,
    CanonicalContact,
    MatchResult,
    MatchStrategy,
    NormalizedEvent,
    NormalizedMessage,
    ProviderAdapter,
    ProviderCredential,
    SyncWindow,
)
from src.activity_sync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ProviderAdapter",
    "ProviderCredential",
    "SyncWindow",
    "NormalizedMessage",
    "NormalizedEvent",
    "CanonicalContact",
    "CanonicalAccount",
    "MatchResult",
    "MatchStrategy",
    "SyncConfig",
    "get_sync_config",
]
