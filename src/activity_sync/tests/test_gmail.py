"""Tests for the Gmail adapter — listing, hydration, parsing and error mapping."""

from __future__ import annotations

import httpx
import pytest

from src.activity_sync.adapters.gmail import (
    GMAIL_API_BASE,
    GmailAdapter,
    decode_base64url,
    extract_body,
    recipient_addresses,
    split_from,
)
from src.activity_sync.base import NormalizedMessage, ProviderCredential, SyncWindow
from src.activity_sync.errors import CredentialError, ParseError, RateLimited, TransientError
from src.activity_sync.tests.conftest import utc

CREDENTIAL = ProviderCredential(access_token="ya29.test-token")
WINDOW = SyncWindow(start=utc(2026, 2, 20, 12), end=utc(2026, 2, 27, 12))


def _adapter(handler) -> GmailAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailAdapter(client, GMAIL_API_BASE)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestGmailParse:
    def test_parse_returns_normalized_message(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert isinstance(result, NormalizedMessage)
        assert result.provider == "gmail"
        assert result.id == "18d2f0a9c3b1e001"
        assert result.thread_id == "18d2f0a9c3b1e000"

    def test_from_header_split_and_unquoted(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.from_name == "Jane Doe"
        assert result.from_email == "Jane.Doe@Y.com"

    def test_to_and_cc_become_address_list(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.to_addresses == ["deals@ourfund.com", "bob@stone.io"]
        assert result.to_field == "Partner Desk <deals@ourfund.com>"

    def test_first_header_occurrence_wins(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.subject == "Intro call"

    def test_internal_date_is_utc(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.timestamp == utc(2026, 2, 25, 9, 30)
        assert result.occurred_at == result.timestamp

    def test_date_header_fallback(self, gmail_message_raw: dict) -> None:
        del gmail_message_raw["internalDate"]
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.timestamp == utc(2026, 2, 25, 9, 30)

    def test_snippet_entities_decoded(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.snippet.startswith("Let's find 30 minutes")

    def test_plain_text_body_preferred(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.body == "Hello there"

    def test_labels(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert result.labels == ["INBOX", "IMPORTANT", "CATEGORY_PERSONAL"]

    def test_missing_id_is_parse_error(self, gmail_message_raw: dict) -> None:
        del gmail_message_raw["id"]
        with pytest.raises(ParseError):
            _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)

    def test_missing_timestamp_is_parse_error(self, gmail_message_raw: dict) -> None:
        del gmail_message_raw["internalDate"]
        gmail_message_raw["payload"]["headers"] = [
            h for h in gmail_message_raw["payload"]["headers"] if h["name"] != "Date"
        ]
        with pytest.raises(ParseError) as exc_info:
            _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert exc_info.value.record_id == "18d2f0a9c3b1e001"

    def test_missing_optional_fields_resolve_to_empty(self) -> None:
        raw = {"id": "bare", "internalDate": "1772011800000", "payload": {}}
        result = _adapter(lambda r: httpx.Response(200)).parse(raw)
        assert result.subject == ""
        assert result.from_email == ""
        assert result.to_addresses == []
        assert result.body == ""

    def test_non_object_header_is_parse_error(self, gmail_message_raw: dict) -> None:
        gmail_message_raw["payload"]["headers"].append("garbage")
        with pytest.raises(ParseError) as exc_info:
            _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert exc_info.value.record_id == "18d2f0a9c3b1e001"

    def test_non_object_payload_is_parse_error(self, gmail_message_raw: dict) -> None:
        gmail_message_raw["payload"] = ["not", "a", "payload"]
        with pytest.raises(ParseError) as exc_info:
            _adapter(lambda r: httpx.Response(200)).parse(gmail_message_raw)
        assert exc_info.value.record_id == "18d2f0a9c3b1e001"


class TestNormalize:
    def test_normalize_returns_parsed_message(self, gmail_message_raw: dict) -> None:
        result = _adapter(lambda r: httpx.Response(200)).normalize(gmail_message_raw)
        assert result.id == "18d2f0a9c3b1e001"

    def test_non_object_record(self) -> None:
        with pytest.raises(ParseError) as exc_info:
            _adapter(lambda r: httpx.Response(200)).normalize("18d2f0a9c3b1e001")
        assert exc_info.value.record_id is None

    def test_unexpected_type_deep_in_record(self) -> None:
        raw = {
            "id": "odd",
            "internalDate": "1772011800000",
            "payload": {"mimeType": "text/plain", "headers": [], "body": "not-an-object"},
        }
        with pytest.raises(ParseError) as exc_info:
            _adapter(lambda r: httpx.Response(200)).normalize(raw)
        assert exc_info.value.record_id == "odd"
        assert isinstance(exc_info.value.__cause__, AttributeError)


class TestGmailHelpers:
    def test_decode_base64url_unpadded(self) -> None:
        assert decode_base64url("SGVsbG8gdGhlcmU") == "Hello there"

    def test_decode_base64url_garbage_is_empty(self) -> None:
        assert decode_base64url("%%%") == ""

    def test_html_body_fallback(self) -> None:
        payload = {
            "mimeType": "multipart/alternative",
            "parts": [{"mimeType": "text/html", "body": {"data": "PGI-SGk8L2I-"}}],
        }
        assert extract_body(payload) == "<b>Hi</b>"

    def test_nested_multipart_body(self) -> None:
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [{"mimeType": "text/plain", "body": {"data": "SGVsbG8gdGhlcmU"}}],
                },
                {"mimeType": "application/pdf", "body": {"attachmentId": "att1"}},
            ],
        }
        assert extract_body(payload) == "Hello there"

    def test_split_from_bare_address(self) -> None:
        assert split_from("jane@x.com") == ("", "jane@x.com")

    def test_split_from_without_address(self) -> None:
        assert split_from("Mail Delivery Subsystem")[1] == ""

    def test_recipient_addresses_multiple_headers(self) -> None:
        result = recipient_addresses('"Doe, Jane" <jane@x.com>, bob@stone.io', "", "Ann <ann@z.org>")
        assert result == ["jane@x.com", "bob@stone.io", "ann@z.org"]


# ---------------------------------------------------------------------------
# HTTP behaviour
# ---------------------------------------------------------------------------


class TestGmailHttp:
    @pytest.mark.asyncio
    async def test_fetch_page_sends_window_query_and_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"messages": [{"id": "a", "threadId": "t"}, {"threadId": "no-id"}], "nextPageToken": "p2"},
            )

        page = await _adapter(handler).fetch_page(CREDENTIAL, WINDOW, 50, page_token="p1")

        request = seen[0]
        assert request.url.path == "/gmail/v1/users/me/messages"
        assert request.url.params["q"] == (
            f"after:{int(WINDOW.start.timestamp())} before:{int(WINDOW.end.timestamp())}"
        )
        assert request.url.params["maxResults"] == "50"
        assert request.url.params["pageToken"] == "p1"
        assert request.headers["Authorization"] == "Bearer ya29.test-token"
        assert page.records == [{"id": "a", "threadId": "t"}]
        assert page.next_page_token == "p2"

    @pytest.mark.asyncio
    async def test_empty_mailbox_page(self) -> None:
        page = await _adapter(lambda r: httpx.Response(200, json={"resultSizeEstimate": 0})).fetch_page(
            CREDENTIAL, WINDOW, 50
        )
        assert page.records == []
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_hydrate_requests_full_format(self, gmail_message_raw: dict) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=gmail_message_raw)

        raw = await _adapter(handler).hydrate(CREDENTIAL, {"id": "18d2f0a9c3b1e001"})
        assert seen[0].url.path.endswith("/users/me/messages/18d2f0a9c3b1e001")
        assert seen[0].url.params["format"] == "full"
        assert raw["id"] == "18d2f0a9c3b1e001"

    @pytest.mark.asyncio
    async def test_401_is_credential_error(self) -> None:
        with pytest.raises(CredentialError):
            await _adapter(lambda r: httpx.Response(401)).fetch_page(CREDENTIAL, WINDOW, 10)

    @pytest.mark.asyncio
    async def test_429_is_rate_limited_with_retry_after(self) -> None:
        adapter = _adapter(lambda r: httpx.Response(429, headers={"Retry-After": "3"}))
        with pytest.raises(RateLimited) as exc_info:
            await adapter.fetch_page(CREDENTIAL, WINDOW, 10)
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_403_quota_is_rate_limited(self) -> None:
        body = {"error": {"code": 403, "errors": [{"reason": "rateLimitExceeded"}]}}
        with pytest.raises(RateLimited):
            await _adapter(lambda r: httpx.Response(403, json=body)).fetch_page(CREDENTIAL, WINDOW, 10)

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self) -> None:
        with pytest.raises(TransientError) as exc_info:
            await _adapter(lambda r: httpx.Response(503)).fetch_page(CREDENTIAL, WINDOW, 10)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientError):
            await _adapter(handler).hydrate(CREDENTIAL, {"id": "x"})

    @pytest.mark.asyncio
    async def test_non_json_body_is_transient(self) -> None:
        adapter = _adapter(lambda r: httpx.Response(200, text="<html>proxy error</html>"))
        with pytest.raises(TransientError):
            await adapter.fetch_page(CREDENTIAL, WINDOW, 10)
