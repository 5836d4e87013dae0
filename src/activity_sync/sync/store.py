"""Stored activity rows and the repository interface the engine writes through.

The engine never talks to a database driver directly.  It reads canonical
contacts/accounts and writes activities through ``ActivityRepository``;
``src.services.activity_store.PostgresActivityRepository`` is the asyncpg
implementation and ``InMemoryActivityRepository`` backs tests and local runs.

Error contract for every implementation:
    insert_activity on an existing key  → StoreConflict
    store unreachable                   → StoreUnavailable
    any other failed write              → StoreWriteError
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from src.activity_sync.base import (
    CanonicalAccount,
    CanonicalContact,
    MatchResult,
    MatchStrategy,
    NormalizedEvent,
    NormalizedRecord,
)
from src.activity_sync.errors import StoreConflict, StoreUnavailable, StoreWriteError
from src.activity_sync.sync.dedup import record_key

logger = logging.getLogger("activity_sync.sync.store")

# Descriptions and bodies can be arbitrarily long; the stored snippet is a preview
_SNIPPET_CHARS = 500


class EntityKind(str, Enum):
    """Canonical entities that carry a last-touch timestamp."""

    CONTACT = "contact"
    ACCOUNT = "account"


@dataclass
class ActivityRecord:
    """One stored activity, keyed by (provider, provider_record_id).

    ``snippet`` and ``labels`` set to None mean "not asserted by this write"
    and leave the stored value alone on update.

    Attributes:
        provider:           Provider slug.
        provider_record_id: Provider's id for the record.
        kind:               'message' or 'event'.
        occurred_at:        Message receipt time or event start (UTC).
        ended_at:           Event end (None for messages).
        thread_id:          Message thread id ('' for events).
        subject:            Subject line or event title.
        from_name:          Sender / organizer display name.
        from_email:         Sender / organizer address.
        to_addresses:       Recipient / attendee addresses.
        snippet:            Preview text.
        labels:             Provider labels.
        meeting_link:       Video conference URL (events).
        html_link:          Provider UI link (events).
        matched_contact_id: Contact the record is attached to.
        matched_account_id: Account of that contact at match time.
        match_strategy:     Heuristic that produced the match.
        synced_at:          When this row was last written by a run.
    """

    provider: str
    provider_record_id: str
    kind: str
    occurred_at: datetime
    ended_at: datetime | None = None
    thread_id: str = ""
    subject: str = ""
    from_name: str = ""
    from_email: str = ""
    to_addresses: list[str] = field(default_factory=list)
    snippet: str | None = None
    labels: list[str] | None = None
    meeting_link: str | None = None
    html_link: str | None = None
    matched_contact_id: str | None = None
    matched_account_id: str | None = None
    match_strategy: MatchStrategy = MatchStrategy.NONE
    synced_at: datetime | None = None

    @property
    def key(self) -> str:
        return record_key(self.provider, self.provider_record_id)

    @classmethod
    def from_normalized(
        cls,
        record: NormalizedRecord,
        match: MatchResult,
        synced_at: datetime | None = None,
    ) -> "ActivityRecord":
        """Build the row for a parsed record and its match outcome."""
        fields = record.match_fields()
        if isinstance(record, NormalizedEvent):
            return cls(
                provider=record.provider,
                provider_record_id=record.id,
                kind="event",
                occurred_at=record.start,
                ended_at=record.end,
                subject=record.title,
                from_name=fields.from_name,
                from_email=fields.from_email,
                to_addresses=fields.to_addresses,
                snippet=record.description[:_SNIPPET_CHARS],
                meeting_link=record.meeting_link,
                html_link=record.html_link,
                matched_contact_id=match.matched_contact_id,
                matched_account_id=match.matched_account_id,
                match_strategy=match.strategy,
                synced_at=synced_at,
            )
        return cls(
            provider=record.provider,
            provider_record_id=record.id,
            kind="message",
            occurred_at=record.timestamp,
            thread_id=record.thread_id,
            subject=record.subject,
            from_name=record.from_name,
            from_email=record.from_email,
            to_addresses=list(record.to_addresses),
            snippet=record.snippet or record.body[:_SNIPPET_CHARS],
            labels=list(record.labels),
            matched_contact_id=match.matched_contact_id,
            matched_account_id=match.matched_account_id,
            match_strategy=match.strategy,
            synced_at=synced_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["match_strategy"] = self.match_strategy.value
        return data


# ---------------------------------------------------------------------------
# Repository interface
# ---------------------------------------------------------------------------


class ActivityRepository(ABC):
    """Persistence boundary for the sync engine."""

    @abstractmethod
    async def list_contacts(self) -> list[CanonicalContact]:
        """Every canonical contact with its primary email and aliases."""

    @abstractmethod
    async def list_accounts(self) -> list[CanonicalAccount]:
        """Every canonical account with its primary contact."""

    @abstractmethod
    async def get_activity(self, provider: str, provider_record_id: str) -> ActivityRecord | None:
        """Return the stored row for a key, or None."""

    @abstractmethod
    async def insert_activity(self, record: ActivityRecord) -> None:
        """Insert a new row.

        Raises:
            StoreConflict: A row with this key already exists.
        """

    @abstractmethod
    async def update_activity(
        self,
        provider: str,
        provider_record_id: str,
        changes: dict[str, Any],
    ) -> None:
        """Apply column changes to an existing row.

        Match columns (matched_contact_id, matched_account_id, match_strategy)
        are only applied while the stored strategy ranks no higher than the
        incoming one, so concurrent writers cannot downgrade a match.
        """

    @abstractmethod
    async def get_last_touch(self, entity: EntityKind, entity_id: str) -> datetime | None:
        """Return the stored last-touch timestamp for a contact or account."""

    @abstractmethod
    async def advance_last_touch(
        self,
        entity: EntityKind,
        entity_id: str,
        candidate: datetime,
    ) -> datetime | None:
        """Set last touch to ``candidate`` only if it is later than the stored value.

        Returns:
            The stored value after the call, or None if the entity is unknown.
        """

    @abstractmethod
    async def save_sync_run(self, run: dict[str, Any]) -> None:
        """Insert or replace the sync_runs row for ``run['run_id']``."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


_MATCH_COLUMNS = ("matched_contact_id", "matched_account_id", "match_strategy")


class InMemoryActivityRepository(ActivityRepository):
    """Dict-backed repository with the same semantics as the Postgres one.

    Every method yields to the event loop once, as a network round-trip
    would, so concurrent callers interleave between read and write.

    Attributes:
        available:   Set False to make every call raise StoreUnavailable.
        fail_writes: Record keys whose insert/update raises StoreWriteError.
    """

    def __init__(
        self,
        contacts: list[CanonicalContact] | None = None,
        accounts: list[CanonicalAccount] | None = None,
    ) -> None:
        self.contacts: list[CanonicalContact] = list(contacts or [])
        self.accounts: list[CanonicalAccount] = list(accounts or [])
        self.activities: dict[str, ActivityRecord] = {}
        self.last_touch: dict[tuple[EntityKind, str], datetime | None] = {}
        self.sync_runs: dict[str, dict[str, Any]] = {}
        self.available = True
        self.fail_writes: set[str] = set()
        self.insert_calls = 0
        self.update_calls = 0

        for contact in self.contacts:
            self.last_touch[(EntityKind.CONTACT, contact.id)] = None
        for account in self.accounts:
            self.last_touch[(EntityKind.ACCOUNT, account.id)] = None

    async def _io(self) -> None:
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailable("in-memory store marked unavailable")

    async def list_contacts(self) -> list[CanonicalContact]:
        await self._io()
        return list(self.contacts)

    async def list_accounts(self) -> list[CanonicalAccount]:
        await self._io()
        return list(self.accounts)

    async def get_activity(self, provider: str, provider_record_id: str) -> ActivityRecord | None:
        await self._io()
        row = self.activities.get(record_key(provider, provider_record_id))
        return replace(row) if row is not None else None

    async def insert_activity(self, record: ActivityRecord) -> None:
        await self._io()
        self.insert_calls += 1
        if record.key in self.fail_writes:
            raise StoreWriteError(f"write rejected for {record.key}")
        if record.key in self.activities:
            raise StoreConflict(f"duplicate key {record.key}")
        self.activities[record.key] = replace(record)

    async def update_activity(
        self,
        provider: str,
        provider_record_id: str,
        changes: dict[str, Any],
    ) -> None:
        await self._io()
        self.update_calls += 1
        key = record_key(provider, provider_record_id)
        if key in self.fail_writes:
            raise StoreWriteError(f"write rejected for {key}")
        row = self.activities.get(key)
        if row is None:
            raise StoreWriteError(f"no stored activity {key}")

        plain = {k: v for k, v in changes.items() if k not in _MATCH_COLUMNS}
        match = {k: v for k, v in changes.items() if k in _MATCH_COLUMNS}
        if match:
            incoming = MatchStrategy(match.get("match_strategy", row.match_strategy))
            if incoming.rank < row.match_strategy.rank:
                match = {}
        self.activities[key] = replace(row, **plain, **match)

    async def get_last_touch(self, entity: EntityKind, entity_id: str) -> datetime | None:
        await self._io()
        return self.last_touch.get((entity, entity_id))

    async def advance_last_touch(
        self,
        entity: EntityKind,
        entity_id: str,
        candidate: datetime,
    ) -> datetime | None:
        await self._io()
        slot = (entity, entity_id)
        if slot not in self.last_touch:
            return None
        current = self.last_touch[slot]
        if current is None or candidate > current:
            self.last_touch[slot] = candidate
        return self.last_touch[slot]

    async def save_sync_run(self, run: dict[str, Any]) -> None:
        await self._io()
        self.sync_runs[run["run_id"]] = dict(run)
