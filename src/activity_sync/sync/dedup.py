"""Deduplication for activity ingestion.

Prevents processing the same provider record twice within a run (a calendar
event that overlaps two window slices is listed by both) and defines the
identity key shared with the store.

Dedup keys:
    activities: (provider, provider_record_id) — UNIQUE constraint
"""

from __future__ import annotations


def record_key(provider: str, provider_record_id: str) -> str:
    """Generate the identity key for a provider record.

    Matches the UNIQUE constraint on activities:
    (provider, provider_record_id).

    Args:
        provider:           Provider slug (e.g. 'gmail').
        provider_record_id: The provider's id for the record.

    Returns:
        Colon-separated dedup key string.
    """
    return f"{provider}:{provider_record_id}"


class InMemoryDedupCache:
    """In-process dedup cache for a single sync run.

    Not a replacement for the database UNIQUE constraint — that is the
    authoritative dedup mechanism.  This cache keeps a run from matching and
    writing the same record twice.

    Usage::

        seen = InMemoryDedupCache()
        if seen.check_and_mark(key):
            continue  # already processed this run
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def check_and_mark(self, key: str) -> bool:
        """Mark the key and return True if it had already been seen."""
        if key in self._seen:
            return True
        self._seen.add(key)
        return False

