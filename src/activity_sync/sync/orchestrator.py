"""Sync orchestrator — one provider sync run, end to end.

A run moves through a fixed sequence of states:

    IDLE → FETCHING → MATCHING → AGGREGATING → PERSISTING → DONE
                                 (any state) → FAILED

Stages:
1. Validate the credential and build the ContactDirectory once.
2. Fetch: the window is split into slices; slices, pages and per-record
   hydration run concurrently under one semaphore.  A slice that still fails
   after retries is dropped and counted, and its siblings carry on.
3. Match: parse each raw record (malformed ones are skipped), drop in-run
   duplicates, run the matcher.
4. Aggregate: latest activity time per matched contact and account.
5. Persist: idempotent upserts, then monotonic last-touch updates.

Only CredentialError and StoreUnavailable fail the run.  Everything else
degrades to a partial success reflected in the run counters.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable

from src.activity_sync.base import (
    MatchResult,
    MatchStrategy,
    NormalizedRecord,
    ProviderAdapter,
    ProviderCredential,
    SyncWindow,
    utc_now,
)
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.directory import ContactDirectory
from src.activity_sync.errors import (
    CredentialError,
    ParseError,
    ProviderError,
    StoreError,
    StoreUnavailable,
    SyncError,
)
from src.activity_sync.matcher import match_record
from src.activity_sync.sync.dedup import InMemoryDedupCache, record_key
from src.activity_sync.sync.retry import Sleep, call_with_retry
from src.activity_sync.sync.store import ActivityRecord, ActivityRepository, EntityKind
from src.activity_sync.sync.writer import IdempotentStoreWriter

logger = logging.getLogger("activity_sync.sync.orchestrator")


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MATCHING = "matching"
    AGGREGATING = "aggregating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncCounts:
    """Per-run counters.

    Attributes:
        fetched:      Raw records retrieved (listed and hydrated).
        matched:      Records attached to a contact.
        persisted:    Rows confirmed in the store (inserted, updated or unchanged).
        skipped:      Malformed records, in-run duplicates, and unmatched
                      records that were not persisted.
        failed:       Hydrations and writes that failed after retries.
        pages_failed: Window slices dropped after exhausting retries.
    """

    fetched: int = 0
    matched: int = 0
    persisted: int = 0
    skipped: int = 0
    failed: int = 0
    pages_failed: int = 0


@dataclass
class SyncRun:
    """State and statistics of one sync run; returned to the caller."""

    run_id: str
    provider: str
    window: SyncWindow
    started_at: datetime
    state: RunState = RunState.IDLE
    finished_at: datetime | None = None
    counts: SyncCounts = field(default_factory=SyncCounts)
    strategies: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in MatchStrategy}
    )
    last_touch: dict[str, dict[str, datetime | None]] = field(
        default_factory=lambda: {"contacts": {}, "accounts": {}}
    )
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "provider": self.provider,
            "state": self.state.value,
            "window_start": self.window.start,
            "window_end": self.window.end,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "counts": {
                "fetched": self.counts.fetched,
                "matched": self.counts.matched,
                "persisted": self.counts.persisted,
                "skipped": self.counts.skipped,
                "failed": self.counts.failed,
                "pages_failed": self.counts.pages_failed,
            },
            "strategies": dict(self.strategies),
            "last_touch": {
                "contacts": dict(self.last_touch["contacts"]),
                "accounts": dict(self.last_touch["accounts"]),
            },
            "error": self.error,
        }


class SyncRunFailed(SyncError):
    """A run ended in FAILED; carries the run and the fatal cause."""

    def __init__(self, run: SyncRun, cause: SyncError) -> None:
        super().__init__(str(cause))
        self.run = run
        self.cause = cause


def aggregate_last_touch(
    pairs: list[tuple[NormalizedRecord, MatchResult]],
) -> tuple[dict[str, datetime], dict[str, datetime]]:
    """Latest activity time per matched contact and per matched account.

    Returns:
        (contact_id → latest, account_id → latest).  Unmatched records are
        ignored; records with no account contribute to the contact only.
    """
    contacts: dict[str, datetime] = {}
    accounts: dict[str, datetime] = {}
    for record, match in pairs:
        if not match.is_match:
            continue
        when = record.occurred_at
        cid = match.matched_contact_id
        if cid not in contacts or when > contacts[cid]:
            contacts[cid] = when
        aid = match.matched_account_id
        if aid and (aid not in accounts or when > accounts[aid]):
            accounts[aid] = when
    return contacts, accounts


class SyncOrchestrator:
    """Run fetch → match → aggregate → persist for one provider.

    Usage::

        orchestrator = SyncOrchestrator(GmailAdapter(client, GMAIL_API_BASE), repo, config)
        run = await orchestrator.run(ProviderCredential(access_token=token))
        run.counts.persisted
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        repository: ActivityRepository,
        config: SyncConfig,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            adapter:    Provider adapter for this run.
            repository: Store for the directory, activities and run records.
            config:     Engine configuration (run shape, retry, matching).
            clock:      Source of "now"; injected for tests.
            sleep:      Backoff sleep; injected for tests.
        """
        self._adapter = adapter
        self._repo = repository
        self._writer = IdempotentStoreWriter(repository)
        self._config = config
        self._clock = clock
        self._sleep = sleep

    async def run(
        self,
        credential: ProviderCredential,
        window_end: datetime | None = None,
    ) -> SyncRun:
        """Execute one sync run.

        Args:
            credential: Provider bearer credential.
            window_end: End of the trailing window (default: now).

        Returns:
            The completed SyncRun (state DONE, possibly with partial counts).

        Raises:
            SyncRunFailed: On CredentialError or StoreUnavailable; the run
                           attached to the exception is in state FAILED.
        """
        now = self._clock()
        provider = self._adapter.SOURCE_ID
        window = SyncWindow.trailing(window_end or now, self._config.sync.window_days)
        run = SyncRun(
            run_id=str(uuid.uuid4()),
            provider=provider,
            window=window,
            started_at=now,
        )
        logger.info(
            "Sync run %s: %s window %s..%s", run.run_id, provider, window.start, window.end
        )

        try:
            credential.require_valid(now, provider)
            await self._record_run(run)
            directory = ContactDirectory.build(
                await self._repo.list_contacts(),
                await self._repo.list_accounts(),
            )

            run.state = RunState.FETCHING
            raw_records = await self._fetch(run, credential)

            run.state = RunState.MATCHING
            pairs = self._match(run, raw_records, directory)

            run.state = RunState.AGGREGATING
            contact_touch, account_touch = aggregate_last_touch(pairs)

            run.state = RunState.PERSISTING
            await self._persist(run, pairs)
            await self._advance_last_touch(run, contact_touch, account_touch)

            run.state = RunState.DONE
            run.finished_at = self._clock()
            await self._record_run(run)
        except (CredentialError, StoreUnavailable) as exc:
            await self._fail(run, exc)
            raise SyncRunFailed(run, exc) from exc

        logger.info(
            "Sync run %s done: fetched=%d matched=%d persisted=%d skipped=%d "
            "failed=%d pages_failed=%d",
            run.run_id,
            run.counts.fetched,
            run.counts.matched,
            run.counts.persisted,
            run.counts.skipped,
            run.counts.failed,
            run.counts.pages_failed,
        )
        return run

    async def _record_run(self, run: SyncRun) -> None:
        """Save the run record.

        Only an unreachable store is fatal.  A rejected write is logged and the
        run carries on with its counts intact.
        """
        try:
            await self._repo.save_sync_run(run.to_dict())
        except StoreUnavailable:
            raise
        except StoreError as exc:
            logger.error("Sync run %s: could not save run record: %s", run.run_id, exc)

    async def _fail(self, run: SyncRun, exc: SyncError) -> None:
        logger.error("Sync run %s failed in %s: %s", run.run_id, run.state.value, exc)
        run.state = RunState.FAILED
        run.error = str(exc)
        run.finished_at = self._clock()
        if isinstance(exc, StoreUnavailable):
            return
        try:
            await self._repo.save_sync_run(run.to_dict())
        except StoreError as store_exc:
            logger.error("Sync run %s: could not record failure: %s", run.run_id, store_exc)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch(self, run: SyncRun, credential: ProviderCredential) -> list[dict]:
        """Fetch every slice of the window concurrently."""
        semaphore = asyncio.Semaphore(self._config.sync.max_concurrency)
        abort = asyncio.Event()
        slices = run.window.slices(self._config.sync.slice_days)

        results = await asyncio.gather(
            *(self._fetch_slice(run, credential, s, semaphore, abort) for s in slices),
            return_exceptions=True,
        )

        records: list[dict] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            records.extend(result)
        run.counts.fetched = len(records)
        logger.info(
            "Sync run %s: fetched %d records from %d slices (%d dropped)",
            run.run_id, len(records), len(slices), run.counts.pages_failed,
        )
        return records

    async def _call(self, fn: Callable, semaphore: asyncio.Semaphore, abort: asyncio.Event, describe: str) -> Any:
        if abort.is_set():
            raise CredentialError(
                f"{self._adapter.SOURCE_ID}: run aborted after credential failure",
                provider=self._adapter.SOURCE_ID,
            )
        try:
            return await call_with_retry(
                fn,
                self._config.retry,
                semaphore=semaphore,
                sleep=self._sleep,
                describe=describe,
            )
        except CredentialError:
            abort.set()
            raise

    async def _fetch_slice(
        self,
        run: SyncRun,
        credential: ProviderCredential,
        window: SyncWindow,
        semaphore: asyncio.Semaphore,
        abort: asyncio.Event,
    ) -> list[dict]:
        """Fetch one slice page by page; drop the slice if a page keeps failing."""
        out: list[dict] = []
        token: str | None = None
        describe = f"{self._adapter.SOURCE_ID} list {window.start:%Y-%m-%d}"
        while True:
            fetch = partial(
                self._adapter.fetch_page,
                credential,
                window,
                self._config.sync.page_size,
                token,
            )
            try:
                page = await self._call(fetch, semaphore, abort, describe)
            except CredentialError:
                raise
            except ProviderError as exc:
                run.counts.pages_failed += 1
                logger.warning(
                    "Sync run %s: dropping slice %s..%s: %s",
                    run.run_id, window.start, window.end, exc,
                )
                break

            hydrated = await asyncio.gather(
                *(self._hydrate(run, credential, stub, semaphore, abort) for stub in page.records),
                return_exceptions=True,
            )
            for item in hydrated:
                if isinstance(item, BaseException):
                    raise item
                if item is not None:
                    out.append(item)

            token = page.next_page_token
            if not token:
                break
        return out

    async def _hydrate(
        self,
        run: SyncRun,
        credential: ProviderCredential,
        stub: dict,
        semaphore: asyncio.Semaphore,
        abort: asyncio.Event,
    ) -> dict | None:
        fetch = partial(self._adapter.hydrate, credential, stub)
        describe = f"{self._adapter.SOURCE_ID} get {stub.get('id')}"
        try:
            return await self._call(fetch, semaphore, abort, describe)
        except CredentialError:
            raise
        except ProviderError as exc:
            run.counts.failed += 1
            logger.warning("Sync run %s: could not hydrate %s: %s", run.run_id, stub.get("id"), exc)
            return None

    # ------------------------------------------------------------------
    # Matching and persisting
    # ------------------------------------------------------------------

    def _match(
        self,
        run: SyncRun,
        raw_records: list[dict],
        directory: ContactDirectory,
    ) -> list[tuple[NormalizedRecord, MatchResult]]:
        """Parse, dedupe and match; malformed and duplicate records are skipped."""
        seen = InMemoryDedupCache()
        pairs: list[tuple[NormalizedRecord, MatchResult]] = []
        min_first = self._config.matching.min_first_name_length

        for raw in raw_records:
            try:
                record = self._adapter.normalize(raw)
            except ParseError as exc:
                run.counts.skipped += 1
                logger.warning("Sync run %s: skipping malformed record: %s", run.run_id, exc)
                continue
            if seen.check_and_mark(record_key(record.provider, record.id)):
                run.counts.skipped += 1
                continue

            match = match_record(record, directory, min_first_name_length=min_first)
            run.strategies[match.strategy.value] += 1
            if match.is_match:
                run.counts.matched += 1
            pairs.append((record, match))
        return pairs

    async def _persist(
        self,
        run: SyncRun,
        pairs: list[tuple[NormalizedRecord, MatchResult]],
    ) -> None:
        synced_at = self._clock()
        for record, match in pairs:
            if not match.is_match and not self._config.sync.persist_unmatched:
                run.counts.skipped += 1
                continue
            row = ActivityRecord.from_normalized(record, match, synced_at=synced_at)
            try:
                await self._writer.upsert(row)
            except StoreUnavailable:
                raise
            except StoreError as exc:
                run.counts.failed += 1
                logger.warning("Sync run %s: write failed for %s: %s", run.run_id, row.key, exc)
                continue
            run.counts.persisted += 1

    async def _advance_last_touch(
        self,
        run: SyncRun,
        contacts: dict[str, datetime],
        accounts: dict[str, datetime],
    ) -> None:
        for kind, bucket, candidates in (
            (EntityKind.CONTACT, "contacts", contacts),
            (EntityKind.ACCOUNT, "accounts", accounts),
        ):
            for entity_id in sorted(candidates):
                try:
                    stored = await self._writer.advance_last_touch(
                        kind, entity_id, candidates[entity_id]
                    )
                except StoreUnavailable:
                    raise
                except StoreError as exc:
                    run.counts.failed += 1
                    logger.warning(
                        "Sync run %s: last-touch update failed for %s %s: %s",
                        run.run_id, kind.value, entity_id, exc,
                    )
                    continue
                run.last_touch[bucket][entity_id] = stored
