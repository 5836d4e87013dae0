"""Idempotent store writer.

Upserts activity rows keyed by (provider, provider_record_id) and advances
contact/account last-touch timestamps without ever moving them backwards.

Writing the same record twice leaves the store exactly as one write would.
A duplicate-key race with a concurrent run is a success, not an error.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from src.activity_sync.errors import StoreConflict
from src.activity_sync.sync.store import ActivityRecord, ActivityRepository, EntityKind

logger = logging.getLogger("activity_sync.sync.writer")


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"


def merge_changes(existing: ActivityRecord, incoming: ActivityRecord) -> dict[str, Any]:
    """Columns of ``existing`` that a write of ``incoming`` would change.

    - snippet / labels: replaced when asserted (not None) and different.
    - match columns: replaced together, and only when the incoming strategy
      ranks at least as high as the stored one.  An alias match is never
      overwritten by a name match, and no match never clears a match.

    Args:
        existing: Row currently in the store.
        incoming: Row produced by this run.

    Returns:
        Column → new value; empty when the write would be a no-op.
    """
    changes: dict[str, Any] = {}

    if incoming.snippet is not None and incoming.snippet != existing.snippet:
        changes["snippet"] = incoming.snippet
    if incoming.labels is not None and incoming.labels != existing.labels:
        changes["labels"] = list(incoming.labels)

    if incoming.match_strategy.rank >= existing.match_strategy.rank:
        new_match = (
            incoming.matched_contact_id,
            incoming.matched_account_id,
            incoming.match_strategy,
        )
        old_match = (
            existing.matched_contact_id,
            existing.matched_account_id,
            existing.match_strategy,
        )
        if new_match != old_match:
            changes["matched_contact_id"] = incoming.matched_contact_id
            changes["matched_account_id"] = incoming.matched_account_id
            changes["match_strategy"] = incoming.match_strategy

    if changes and incoming.synced_at is not None:
        changes["synced_at"] = incoming.synced_at
    return changes


class IdempotentStoreWriter:
    """Apply activity rows and last-touch updates through a repository.

    Usage::

        writer = IdempotentStoreWriter(repository)
        outcome = await writer.upsert(row)
        latest = await writer.advance_last_touch(EntityKind.CONTACT, "c1", when)
    """

    def __init__(self, repository: ActivityRepository) -> None:
        self._repo = repository

    async def upsert(self, record: ActivityRecord) -> UpsertOutcome:
        """Insert the row, or merge it into the stored one.

        Raises:
            StoreUnavailable: The store cannot be reached.
            StoreWriteError:  The write was rejected.
        """
        existing = await self._repo.get_activity(record.provider, record.provider_record_id)

        if existing is None:
            try:
                await self._repo.insert_activity(record)
            except StoreConflict:
                # A concurrent run inserted the same record first
                logger.debug("Writer: %s already inserted concurrently", record.key)
                return UpsertOutcome.DUPLICATE
            return UpsertOutcome.INSERTED

        changes = merge_changes(existing, record)
        if not changes:
            return UpsertOutcome.UNCHANGED

        await self._repo.update_activity(record.provider, record.provider_record_id, changes)
        logger.debug("Writer: updated %s (%s)", record.key, ", ".join(sorted(changes)))
        return UpsertOutcome.UPDATED

    async def advance_last_touch(
        self,
        entity: EntityKind,
        entity_id: str,
        candidate: datetime,
    ) -> datetime | None:
        """Move last touch forward to ``candidate``; never backwards.

        Returns:
            The stored last-touch value after the call.
        """
        result = await self._repo.advance_last_touch(entity, entity_id, candidate)
        if result is None:
            logger.warning("Writer: %s %s not found for last-touch update", entity.value, entity_id)
        return result
