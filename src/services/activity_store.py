"""PostgreSQL implementation of the activity repository.

Tables (see migrations/001_activity_sync.sql):
    contacts    — canonical contacts, aliases TEXT[], last_touch
    accounts    — canonical accounts, primary_contact_id, last_touch
    activities  — UNIQUE (provider, provider_record_id)
    sync_runs   — one row per run, counters as JSONB

asyncpg errors are translated at this boundary:
    UniqueViolationError           → StoreConflict
    connection / pool failures     → StoreUnavailable
    any other PostgresError        → StoreWriteError (writes) or
                                     StoreUnavailable (reads)
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator

import asyncpg

from src.activity_sync.base import CanonicalAccount, CanonicalContact, MatchStrategy
from src.activity_sync.errors import StoreConflict, StoreUnavailable, StoreWriteError
from src.activity_sync.sync.store import ActivityRecord, ActivityRepository, EntityKind
from src.services.database import get_connection

logger = logging.getLogger("activity_sync.db.activities")

_CONNECTION_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

_ENTITY_TABLES = {EntityKind.CONTACT: "contacts", EntityKind.ACCOUNT: "accounts"}

_PLAIN_COLUMNS = ("snippet", "labels", "synced_at")
_MATCH_COLUMNS = ("matched_contact_id", "matched_account_id", "match_strategy")

_RANK_SQL = "CASE match_strategy WHEN 'alias' THEN 2 WHEN 'name' THEN 1 ELSE 0 END"

_ACTIVITY_COLUMNS = (
    "provider", "provider_record_id", "kind", "occurred_at", "ended_at",
    "thread_id", "subject", "from_name", "from_email", "to_addresses",
    "snippet", "labels", "meeting_link", "html_link",
    "matched_contact_id", "matched_account_id", "match_strategy", "synced_at",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def _row_to_activity(row: asyncpg.Record) -> ActivityRecord:
    return ActivityRecord(
        provider=row["provider"],
        provider_record_id=row["provider_record_id"],
        kind=row["kind"],
        occurred_at=row["occurred_at"],
        ended_at=row["ended_at"],
        thread_id=row["thread_id"] or "",
        subject=row["subject"] or "",
        from_name=row["from_name"] or "",
        from_email=row["from_email"] or "",
        to_addresses=list(row["to_addresses"] or []),
        snippet=row["snippet"],
        labels=list(row["labels"]) if row["labels"] is not None else None,
        meeting_link=row["meeting_link"],
        html_link=row["html_link"],
        matched_contact_id=row["matched_contact_id"],
        matched_account_id=row["matched_account_id"],
        match_strategy=MatchStrategy(row["match_strategy"] or "none"),
        synced_at=row["synced_at"],
    )


class PostgresActivityRepository(ActivityRepository):
    """ActivityRepository backed by the shared asyncpg pool.

    Args:
        pool: Pool to use; defaults to the app-wide pool from init_pool().
    """

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _conn(
        self,
        write: bool = False,
        transaction: bool = False,
    ) -> AsyncGenerator[asyncpg.Connection, None]:
        try:
            async with get_connection(self._pool, transaction=transaction) as conn:
                yield conn
        except asyncpg.UniqueViolationError as exc:
            raise StoreConflict(str(exc)) from exc
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailable(f"database unreachable: {exc}") from exc
        except RuntimeError as exc:
            # get_pool() before init_pool()
            raise StoreUnavailable(str(exc)) from exc
        except asyncpg.PostgresError as exc:
            if write:
                raise StoreWriteError(str(exc)) from exc
            raise StoreUnavailable(f"database read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Canonical entities
    # ------------------------------------------------------------------

    async def list_contacts(self) -> list[CanonicalContact]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT id, name, primary_email, aliases FROM contacts ORDER BY id"
            )
        return [
            CanonicalContact(
                id=str(r["id"]),
                name=r["name"] or "",
                primary_email=r["primary_email"] or "",
                aliases=tuple(r["aliases"] or ()),
            )
            for r in rows
        ]

    async def list_accounts(self) -> list[CanonicalAccount]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT id, name, primary_contact_id FROM accounts ORDER BY id"
            )
        return [
            CanonicalAccount(
                id=str(r["id"]),
                name=r["name"] or "",
                primary_contact_id=str(r["primary_contact_id"]) if r["primary_contact_id"] else None,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def get_activity(self, provider: str, provider_record_id: str) -> ActivityRecord | None:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {', '.join(_ACTIVITY_COLUMNS)} FROM activities "
                "WHERE provider = $1 AND provider_record_id = $2",
                provider,
                provider_record_id,
            )
        return _row_to_activity(row) if row else None

    async def insert_activity(self, record: ActivityRecord) -> None:
        values = record.to_dict()
        placeholders = ", ".join(f"${i}" for i in range(1, len(_ACTIVITY_COLUMNS) + 1))
        async with self._conn(write=True) as conn:
            await conn.execute(
                f"INSERT INTO activities ({', '.join(_ACTIVITY_COLUMNS)}) VALUES ({placeholders})",
                *(values[c] for c in _ACTIVITY_COLUMNS),
            )

    async def update_activity(
        self,
        provider: str,
        provider_record_id: str,
        changes: dict[str, Any],
    ) -> None:
        plain = {k: v for k, v in changes.items() if k in _PLAIN_COLUMNS}
        match = {k: v for k, v in changes.items() if k in _MATCH_COLUMNS}
        if "match_strategy" in match:
            match["match_strategy"] = MatchStrategy(match["match_strategy"]).value

        async with self._conn(write=True, transaction=True) as conn:
            if plain:
                sets = ", ".join(f"{col} = ${i}" for i, col in enumerate(plain, start=3))
                await conn.execute(
                    f"UPDATE activities SET {sets} "
                    "WHERE provider = $1 AND provider_record_id = $2",
                    provider,
                    provider_record_id,
                    *plain.values(),
                )
            if match:
                incoming_rank = MatchStrategy(
                    match.get("match_strategy", MatchStrategy.NONE.value)
                ).rank
                sets = ", ".join(f"{col} = ${i}" for i, col in enumerate(match, start=4))
                # Rank guard: a concurrent stronger match is never downgraded
                await conn.execute(
                    f"UPDATE activities SET {sets} "
                    f"WHERE provider = $1 AND provider_record_id = $2 AND {_RANK_SQL} <= $3",
                    provider,
                    provider_record_id,
                    incoming_rank,
                    *match.values(),
                )

    # ------------------------------------------------------------------
    # Last touch
    # ------------------------------------------------------------------

    async def get_last_touch(self, entity: EntityKind, entity_id: str) -> datetime | None:
        table = _ENTITY_TABLES[entity]
        async with self._conn() as conn:
            return await conn.fetchval(f"SELECT last_touch FROM {table} WHERE id = $1", entity_id)

    async def advance_last_touch(
        self,
        entity: EntityKind,
        entity_id: str,
        candidate: datetime,
    ) -> datetime | None:
        table = _ENTITY_TABLES[entity]
        async with self._conn(write=True, transaction=True) as conn:
            updated = await conn.fetchval(
                f"UPDATE {table} SET last_touch = $2 "
                "WHERE id = $1 AND (last_touch IS NULL OR last_touch < $2) "
                "RETURNING last_touch",
                entity_id,
                candidate,
            )
            if updated is not None:
                return updated
            return await conn.fetchval(f"SELECT last_touch FROM {table} WHERE id = $1", entity_id)

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    async def save_sync_run(self, run: dict[str, Any]) -> None:
        async with self._conn(write=True) as conn:
            await conn.execute(
                """
                INSERT INTO sync_runs (
                    run_id, provider, state, window_start, window_end,
                    started_at, finished_at, counts, strategies, last_touch, error
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10::jsonb, $11)
                ON CONFLICT (run_id) DO UPDATE SET
                    state = EXCLUDED.state,
                    finished_at = EXCLUDED.finished_at,
                    counts = EXCLUDED.counts,
                    strategies = EXCLUDED.strategies,
                    last_touch = EXCLUDED.last_touch,
                    error = EXCLUDED.error
                """,
                run["run_id"],
                run["provider"],
                run["state"],
                run["window_start"],
                run["window_end"],
                run["started_at"],
                run["finished_at"],
                json.dumps(run["counts"]),
                json.dumps(run["strategies"]),
                json.dumps(run["last_touch"], default=_json_default),
                run["error"],
            )
        logger.debug("Saved sync run %s (%s)", run["run_id"], run["state"])
