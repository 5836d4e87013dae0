"""Gmail API v1 adapter.

Lists the mailbox for a time slice, hydrates each listed message with a
``format=full`` get, and normalizes the result into NormalizedMessage.

API base: https://gmail.googleapis.com/gmail/v1

Endpoints used:
    /users/me/messages        — id listing with a ``q`` time filter
    /users/me/messages/{id}   — full message (headers, parts, labels)
"""

from __future__ import annotations

import base64
import binascii
import html
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

from src.activity_sync.base import (
    NormalizedMessage,
    ProviderAdapter,
    ProviderCredential,
    ProviderPage,
    SyncWindow,
)
from src.activity_sync.errors import ParseError

logger = logging.getLogger("activity_sync.adapters.gmail")

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"


def decode_base64url(data: str) -> str:
    """Decode Gmail's unpadded base64url body data to text.

    Undecodable input yields '' rather than raising.
    """
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def header_map(headers: list[dict]) -> dict[str, str]:
    """Index message headers by lower-cased name; the first occurrence wins."""
    out: dict[str, str] = {}
    for h in headers:
        name = str(h.get("name") or "").lower()
        if name and name not in out:
            out[name] = str(h.get("value") or "")
    return out


def _find_body(part: dict, mime_type: str) -> str:
    """Depth-first search for the first part of the given MIME type."""
    if part.get("mimeType", "") == mime_type:
        data = (part.get("body") or {}).get("data", "")
        if data:
            return decode_base64url(data)
    for child in part.get("parts") or []:
        if not isinstance(child, dict):
            continue
        found = _find_body(child, mime_type)
        if found:
            return found
    return ""


def extract_body(payload: dict) -> str:
    """Return the message text, preferring text/plain over text/html."""
    if not payload:
        return ""
    if not payload.get("parts"):
        return decode_base64url((payload.get("body") or {}).get("data", ""))
    return _find_body(payload, "text/plain") or _find_body(payload, "text/html")


def split_from(value: str) -> tuple[str, str]:
    """Split a From header into (display name, address)."""
    name, addr = parseaddr(value)
    name = name.strip().strip('"').strip()
    if "@" not in addr:
        return name, ""
    return name, addr.strip()


def recipient_addresses(*fields: str) -> list[str]:
    """Parse one or more address-list headers into addresses, in order."""
    return [
        addr.strip()
        for _, addr in getaddresses([f for f in fields if f])
        if "@" in addr
    ]


class GmailAdapter(ProviderAdapter):
    """Gmail REST adapter.

    The mailbox is listed per slice with a ``q`` filter of
    ``after:<epoch> before:<epoch>``; every listed id costs one more request
    to hydrate, which is why hydration runs under the orchestrator's
    concurrency limit.
    """

    SOURCE_ID = "gmail"
    DISPLAY_NAME = "Gmail"

    async def fetch_page(
        self,
        credential: ProviderCredential,
        window: SyncWindow,
        page_size: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        """List message ids received inside the window.

        Args:
            credential: Bearer credential.
            window:     Slice to list.
            page_size:  maxResults for the list call.
            page_token: Continuation token.

        Returns:
            ProviderPage of ``{'id', 'threadId'}`` stubs.
        """
        params: dict[str, str | int] = {
            "q": f"after:{int(window.start.timestamp())} before:{int(window.end.timestamp())}",
            "maxResults": page_size,
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._get("users/me/messages", credential, params=params)
        stubs = [m for m in data.get("messages") or [] if m.get("id")]
        logger.debug(
            "Gmail: listed %d messages for %s..%s", len(stubs), window.start, window.end
        )
        return ProviderPage(records=stubs, next_page_token=data.get("nextPageToken"))

    async def hydrate(self, credential: ProviderCredential, record: dict) -> dict:
        """Fetch the full message for a listed stub."""
        return await self._get(
            f"users/me/messages/{record['id']}",
            credential,
            params={"format": "full"},
        )

    def parse(self, raw: dict) -> NormalizedMessage:
        """Convert a full Gmail message to NormalizedMessage.

        Raises:
            ParseError: If the message has no id, no derivable timestamp, or a
                        payload or header that is not an object.
        """
        message_id = raw.get("id")
        if not message_id:
            raise ParseError("Gmail message without id", provider=self.SOURCE_ID)

        message_id = str(message_id)
        payload = self._mapping(raw.get("payload"), "payload", message_id)
        headers = header_map(self._mappings(payload.get("headers"), "headers", message_id))
        from_name, from_email = split_from(headers.get("from", ""))
        to_header = headers.get("to", "")

        timestamp = self._epoch_ms_to_datetime(raw.get("internalDate"))
        if timestamp is None:
            timestamp = self._parse_date_header(headers.get("date", ""))
        if timestamp is None:
            raise ParseError(
                f"Gmail message {message_id} has no usable timestamp",
                provider=self.SOURCE_ID,
                record_id=message_id,
            )

        return NormalizedMessage(
            id=message_id,
            thread_id=str(raw.get("threadId") or ""),
            subject=headers.get("subject", ""),
            from_name=from_name,
            from_email=from_email,
            to_addresses=recipient_addresses(to_header, headers.get("cc", "")),
            timestamp=timestamp,
            snippet=html.unescape(raw.get("snippet") or ""),
            labels=[str(label) for label in raw.get("labelIds") or []],
            to_field=to_header,
            body=extract_body(payload),
            provider=self.SOURCE_ID,
        )

    @staticmethod
    def _parse_date_header(value: str) -> datetime | None:
        if not value:
            return None
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
