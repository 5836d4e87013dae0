"""Base classes and canonical data models for the activity sync engine.

Every provider adapter must subclass ProviderAdapter and return the canonical
NormalizedMessage / NormalizedEvent models.  These types are the single
source of truth consumed by the matcher, the orchestrator and the store
writer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union

import httpx

from src.activity_sync.errors import (
    CredentialError,
    ParseError,
    TransientError,
    classify_response,
    classify_transport_error,
)

logger = logging.getLogger("activity_sync")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Credentials and windows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderCredential:
    """Bearer credential obtained from the external credential provider.

    Attributes:
        access_token: Bearer token for provider API calls.
        expires_at:   UTC datetime when the token expires, if known.
    """

    access_token: str
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= now

    def require_valid(self, now: datetime, provider: str) -> None:
        """Raise CredentialError if the token is missing or already expired."""
        if not self.access_token:
            raise CredentialError(f"{provider}: no access token", provider=provider)
        if self.is_expired(now):
            raise CredentialError(
                f"{provider}: access token expired at {self.expires_at.isoformat()}",
                provider=provider,
            )


@dataclass(frozen=True)
class SyncWindow:
    """Half-open trailing time window [start, end) covered by one sync run."""

    start: datetime
    end: datetime

    @classmethod
    def trailing(cls, end: datetime, days: int) -> "SyncWindow":
        return cls(start=end - timedelta(days=days), end=end)

    def slices(self, slice_days: int) -> list["SyncWindow"]:
        """Split the window into contiguous sub-windows of at most slice_days.

        Slices are independent units of fetching: a slice that fails does not
        affect its siblings.

        Args:
            slice_days: Maximum length of a slice in days (>= 1).

        Returns:
            Slices ordered oldest first, covering the window exactly.
        """
        step = timedelta(days=max(1, slice_days))
        out: list[SyncWindow] = []
        cursor = self.start
        while cursor < self.end:
            nxt = min(cursor + step, self.end)
            out.append(SyncWindow(start=cursor, end=nxt))
            cursor = nxt
        return out


# ---------------------------------------------------------------------------
# Normalized provider records
# ---------------------------------------------------------------------------


@dataclass
class MatchFields:
    """The record metadata the matcher looks at, in provider-neutral form.

    Attributes:
        from_email:   Sender (or organizer) address, as received.
        from_name:    Sender (or organizer) display name.
        to_addresses: Recipient (or attendee) addresses, in header order.
        to_field:     Free text of the recipient field, names included.
        subject:      Subject line or event title.
    """

    from_email: str = ""
    from_name: str = ""
    to_addresses: list[str] = field(default_factory=list)
    to_field: str = ""
    subject: str = ""


@dataclass
class NormalizedMessage:
    """Canonical email message derived from any mail provider.

    Attributes:
        id:           Provider message id (the idempotence key with provider).
        thread_id:    Provider thread id.
        subject:      Subject header ('' if absent).
        from_name:    Display name part of From ('' if absent).
        from_email:   Address part of From ('' if absent).
        to_addresses: Addresses from To and Cc, in header order.
        timestamp:    UTC datetime the provider received the message.
        snippet:      Provider-generated preview text.
        labels:       Provider labels / folders.
        to_field:     Raw To header text, used for name matching.
        body:         Decoded text body (stored as the snippet when Gmail sends none).
        provider:     Provider slug.
    """

    id: str
    thread_id: str
    subject: str
    from_name: str
    from_email: str
    to_addresses: list[str]
    timestamp: datetime
    snippet: str = ""
    labels: list[str] = field(default_factory=list)
    to_field: str = ""
    body: str = ""
    provider: str = "gmail"

    @property
    def occurred_at(self) -> datetime:
        return self.timestamp

    def match_fields(self) -> MatchFields:
        return MatchFields(
            from_email=self.from_email,
            from_name=self.from_name,
            to_addresses=list(self.to_addresses),
            to_field=self.to_field,
            subject=self.subject,
        )


@dataclass
class EventAttendee:
    email: str = ""
    display_name: str = ""
    response_status: str = ""


@dataclass
class NormalizedEvent:
    """Canonical calendar event derived from any calendar provider.

    Attributes:
        id:             Provider event id.
        title:          Event summary ('Untitled Event' if absent).
        start:          UTC start (all-day events start at midnight UTC).
        end:            UTC end (falls back to start).
        attendees:      Invitees, organizer included when the provider lists it.
        meeting_link:   Video conference URL, if any.
        html_link:      Provider UI link, if any.
        organizer_email: Organizer address ('' if absent).
        organizer_name:  Organizer display name ('' if absent).
        description:    Free-text description ('' if absent).
        location:       Location text ('' if absent).
        provider:       Provider slug.
    """

    id: str
    title: str
    start: datetime
    end: datetime
    attendees: list[EventAttendee] = field(default_factory=list)
    meeting_link: str | None = None
    html_link: str | None = None
    organizer_email: str = ""
    organizer_name: str = ""
    description: str = ""
    location: str = ""
    provider: str = "google_calendar"

    @property
    def occurred_at(self) -> datetime:
        return self.start

    def match_fields(self) -> MatchFields:
        emails = [a.email for a in self.attendees if a.email]
        names = [a.display_name for a in self.attendees if a.display_name]
        return MatchFields(
            from_email=self.organizer_email,
            from_name=self.organizer_name,
            to_addresses=emails,
            to_field=", ".join(names + emails),
            subject=self.title,
        )


NormalizedRecord = Union[NormalizedMessage, NormalizedEvent]


# ---------------------------------------------------------------------------
# Canonical CRM entities (read-only to the engine)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CanonicalContact:
    """CRM-tracked person with a primary email and zero or more aliases."""

    id: str
    name: str
    primary_email: str
    aliases: tuple[str, ...] = ()

    @property
    def emails(self) -> list[str]:
        return [self.primary_email, *self.aliases]

    @property
    def first_name(self) -> str:
        parts = self.name.split()
        return parts[0] if parts else ""


@dataclass(frozen=True)
class CanonicalAccount:
    """CRM account (company), optionally owned by a primary contact."""

    id: str
    name: str
    primary_contact_id: str | None = None


class MatchStrategy(str, Enum):
    """Which heuristic associated a record with a contact."""

    ALIAS = "alias"
    NAME = "name"
    NONE = "none"

    @property
    def rank(self) -> int:
        return {"alias": 2, "name": 1, "none": 0}[self.value]


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one record; folded into the stored record."""

    record_id: str
    matched_contact_id: str | None = None
    matched_account_id: str | None = None
    strategy: MatchStrategy = MatchStrategy.NONE

    @property
    def is_match(self) -> bool:
        return self.matched_contact_id is not None


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


@dataclass
class ProviderPage:
    """One page of raw provider records plus the token for the next page."""

    records: list[dict] = field(default_factory=list)
    next_page_token: str | None = None


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    Each provider implements this interface so the orchestrator can drive
    fetch → hydrate → parse without knowing provider specifics.

    Subclasses must implement:
        - fetch_page()
        - parse()

    Optional override:
        - hydrate()  (default: the listed record is already complete)
    """

    #: Unique slug stored as activities.provider (e.g. 'gmail').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    def __init__(self, http_client: httpx.AsyncClient, api_base: str) -> None:
        """Initialize the adapter.

        Args:
            http_client: Shared httpx client; its timeout bounds every call.
            api_base:    Provider API base URL.
        """
        self._http = http_client
        self._api_base = api_base.rstrip("/")

    @abstractmethod
    async def fetch_page(
        self,
        credential: ProviderCredential,
        window: SyncWindow,
        page_size: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        """Fetch one page of raw records inside the window.

        Args:
            credential: Valid bearer credential.
            window:     Time window to list.
            page_size:  Maximum records per page.
            page_token: Continuation token from the previous page.

        Returns:
            ProviderPage with raw records and the next page token.
        """

    async def hydrate(self, credential: ProviderCredential, record: dict) -> dict:
        """Expand a listed record into its full payload.

        The default is the identity: providers whose list calls return
        complete records need no extra request.
        """
        return record

    @abstractmethod
    def parse(self, raw: dict) -> NormalizedRecord:
        """Convert a provider-native record to its canonical form.

        This is a pure function — no I/O.  Missing optional fields resolve to
        '' or None.

        Raises:
            ParseError: If the record cannot be normalized at all.
        """

    def normalize(self, raw: Any) -> NormalizedRecord:
        """Parse one raw record; any shape problem is confined to that record.

        Raises:
            ParseError: If the record is not an object or parse() trips over
                        an unexpected type anywhere inside it.
        """
        if not isinstance(raw, dict):
            raise ParseError(
                f"{self.DISPLAY_NAME} record is a {type(raw).__name__}, not an object",
                provider=self.SOURCE_ID,
            )
        try:
            return self.parse(raw)
        except ParseError:
            raise
        except (AttributeError, TypeError, KeyError, ValueError) as exc:
            record_id = raw.get("id")
            raise ParseError(
                f"{self.DISPLAY_NAME} record {record_id!r} is malformed: {exc}",
                provider=self.SOURCE_ID,
                record_id=str(record_id) if record_id else None,
            ) from exc

    # ------------------------------------------------------------------
    # Shared parsing helpers
    # ------------------------------------------------------------------

    def _mapping(self, value: Any, what: str, record_id: str) -> dict:
        """Return ``value`` as a dict; None means absent, anything else is malformed."""
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ParseError(
                f"{self.DISPLAY_NAME} record {record_id}: {what} is a "
                f"{type(value).__name__}, not an object",
                provider=self.SOURCE_ID,
                record_id=record_id,
            )
        return value

    def _mappings(self, value: Any, what: str, record_id: str) -> list[dict]:
        """Return ``value`` as a list of dicts, rejecting any other shape."""
        if value is None:
            return []
        if not isinstance(value, list):
            raise ParseError(
                f"{self.DISPLAY_NAME} record {record_id}: {what} is not a list",
                provider=self.SOURCE_ID,
                record_id=record_id,
            )
        return [self._mapping(item, f"{what} entry", record_id) for item in value]

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _epoch_ms_to_datetime(value: object) -> datetime | None:
        """Convert epoch milliseconds (int or numeric string) to UTC."""
        if value is None or value == "":
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    # ------------------------------------------------------------------
    # Shared HTTP helper
    # ------------------------------------------------------------------

    async def _get(
        self,
        path: str,
        credential: ProviderCredential,
        params: dict[str, Any] | None = None,
    ) -> dict:
        """Make an authenticated GET request against the provider API.

        Args:
            path:       Path below api_base (or an absolute URL).
            credential: Bearer credential.
            params:     Query parameters.

        Returns:
            Parsed JSON body.

        Raises:
            CredentialError, RateLimited, TransientError, ProviderError.
        """
        url = path if path.startswith("http") else f"{self._api_base}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            response = await self._http.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, self.SOURCE_ID) from exc

        error = classify_response(response, self.SOURCE_ID)
        if error is not None:
            raise error
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(
                f"{self.SOURCE_ID}: non-JSON response from {url}",
                provider=self.SOURCE_ID,
            ) from exc
