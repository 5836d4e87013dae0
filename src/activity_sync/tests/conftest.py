"""Shared fixtures, fake provider APIs and canonical data for sync engine tests."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from src.activity_sync.base import CanonicalAccount, CanonicalContact
from src.activity_sync.config_loader import FeedSource, SyncConfig, load_sync_config
from src.activity_sync.directory import ContactDirectory
from src.activity_sync.errors import StoreWriteError
from src.activity_sync.sync.store import InMemoryActivityRepository

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Fixed "now" for every run-level test; the trailing window is 2026-01-30 12:00 → 2026-03-01 12:00
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

JANE = CanonicalContact(
    id="c1", name="Jane Doe", primary_email="jane@x.com", aliases=("jane.doe@y.com",)
)
BOB = CanonicalContact(id="c2", name="Bob Stone", primary_email="bob@stone.io")
DOE_VENTURES = CanonicalAccount(id="a1", name="Doe Ventures", primary_contact_id="c1")
STONE_CAPITAL = CanonicalAccount(id="a2", name="Stone Capital", primary_contact_id="c2")

ALPHA_FEED = FeedSource(
    id="alpha", label="Alpha News", url="https://feeds.alpha-news.com/rss", topics=["startups"]
)
BETA_FEED = FeedSource(
    id="beta", label="Beta Wire", url="https://beta.example.org/atom", topics=["ai"]
)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def no_sleep(_: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Provider payload builders
# ---------------------------------------------------------------------------


def make_gmail_message(
    msg_id: str,
    when: datetime,
    sender: str,
    subject: str = "",
    to: str = "Partner Desk <deals@ourfund.com>",
    cc: str = "",
) -> dict:
    """Build a ``format=full`` Gmail message resource."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Subject", "value": subject},
    ]
    if cc:
        headers.append({"name": "Cc", "value": cc})
    return {
        "id": msg_id,
        "threadId": f"t-{msg_id}",
        "labelIds": ["INBOX"],
        "snippet": f"snippet of {msg_id}",
        "internalDate": str(int(when.timestamp() * 1000)),
        "payload": {
            "mimeType": "text/plain",
            "headers": headers,
            "body": {"size": 11, "data": "SGVsbG8gdGhlcmU"},
        },
    }


def run_messages() -> list[dict]:
    """Four messages spread over the trailing window.

    m1, m4 — from Jane's alias (alias match, 2026-02-25)
    m2     — newsletter naming Bob Stone (name match, 2026-02-10)
    m3     — unrelated bank alert (no match, 2026-02-03)
    """
    return [
        make_gmail_message("m1", utc(2026, 2, 25, 9, 30), '"Jane Doe" <Jane.Doe@Y.com>', "Intro call"),
        make_gmail_message("m2", utc(2026, 2, 10, 14, 0), "Newsletter <news@mailer.com>", "Bob Stone joins the board"),
        make_gmail_message("m3", utc(2026, 2, 3, 8, 0), "Alerts <alerts@bank.com>", "Statement ready"),
        make_gmail_message("m4", utc(2026, 2, 25, 18, 0), "Jane Doe <jane.doe@y.com>", "Re: Intro call"),
    ]


class FakeGmailApi:
    """In-process stand-in for the Gmail REST API, served through httpx.MockTransport.

    Listing honours the ``after:``/``before:`` query and pages with numeric
    tokens.  Failure knobs:
        failing_slices:  'after' epochs whose listing always returns 503
        get_status:      message id → status returned by messages.get
        status_override: status returned for every request
    """

    def __init__(self, messages: list[dict]) -> None:
        self.messages = {m["id"]: m for m in messages}
        self.requests: list[httpx.Request] = []
        self.failing_slices: set[int] = set()
        self.get_status: dict[str, int] = {}
        self.status_override: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(
                self.status_override, json={"error": {"code": self.status_override}}
            )
        if request.url.path.endswith("/users/me/messages"):
            return self._list(request)

        msg_id = request.url.path.rsplit("/", 1)[-1]
        if msg_id in self.get_status:
            return httpx.Response(self.get_status[msg_id], text="backend error")
        if msg_id not in self.messages:
            return httpx.Response(404, json={"error": {"code": 404}})
        return httpx.Response(200, json=self.messages[msg_id])

    def _list(self, request: httpx.Request) -> httpx.Response:
        bounds = dict(part.split(":", 1) for part in request.url.params["q"].split())
        after, before = int(bounds["after"]), int(bounds["before"])
        if after in self.failing_slices:
            return httpx.Response(503, text="backend error")

        ids = sorted(
            mid for mid, m in self.messages.items()
            if after * 1000 <= int(m["internalDate"]) < before * 1000
        )
        start = int(request.url.params.get("pageToken") or 0)
        size = int(request.url.params["maxResults"])
        chunk = ids[start:start + size]
        body: dict = {
            "messages": [{"id": mid, "threadId": self.messages[mid]["threadId"]} for mid in chunk],
            "resultSizeEstimate": len(chunk),
        }
        if start + size < len(ids):
            body["nextPageToken"] = str(start + size)
        return httpx.Response(200, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def gets_for(self, msg_id: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"/messages/{msg_id}")]


class RejectingRunLog(InMemoryActivityRepository):
    """In-memory store whose sync_runs write is rejected for the listed run states."""

    def __init__(self, *args, reject_states: set[str], **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.reject_states = reject_states

    async def save_sync_run(self, run: dict) -> None:
        if run["state"] in self.reject_states:
            raise StoreWriteError(f"sync_runs rejected run in state {run['state']}")
        await super().save_sync_run(run)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """The bundled config with the catalog swapped for the test feeds."""
    config = load_sync_config()
    return replace(config, feeds=replace(config.feeds, catalog=[ALPHA_FEED, BETA_FEED]))


# ---------------------------------------------------------------------------
# Canonical data fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def contacts() -> list[CanonicalContact]:
    return [JANE, BOB]


@pytest.fixture
def accounts() -> list[CanonicalAccount]:
    return [DOE_VENTURES, STONE_CAPITAL]


@pytest.fixture
def directory(contacts: list[CanonicalContact], accounts: list[CanonicalAccount]) -> ContactDirectory:
    return ContactDirectory.build(contacts, accounts)


@pytest.fixture
def repository(
    contacts: list[CanonicalContact], accounts: list[CanonicalAccount]
) -> InMemoryActivityRepository:
    return InMemoryActivityRepository(contacts, accounts)


@pytest.fixture
def gmail_api() -> FakeGmailApi:
    return FakeGmailApi(run_messages())


# ---------------------------------------------------------------------------
# Recorded payload loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def gmail_message_raw() -> dict:
    return json.loads((FIXTURES_DIR / "gmail_message.json").read_text())


@pytest.fixture
def calendar_events_raw() -> dict:
    return json.loads((FIXTURES_DIR / "calendar_events.json").read_text())


@pytest.fixture
def rss_xml() -> bytes:
    return (FIXTURES_DIR / "rss_feed.xml").read_bytes()


@pytest.fixture
def atom_xml() -> bytes:
    return (FIXTURES_DIR / "atom_feed.xml").read_bytes()
