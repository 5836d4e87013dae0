"""Google Calendar API v3 adapter.

API base: https://www.googleapis.com/calendar/v3

Endpoints used:
    /calendars/primary/events — expanded single events inside [timeMin, timeMax)

Events come back complete from the list call, so hydration is the identity.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone

from src.activity_sync.base import (
    EventAttendee,
    NormalizedEvent,
    ProviderAdapter,
    ProviderCredential,
    ProviderPage,
    SyncWindow,
)
from src.activity_sync.errors import ParseError

logger = logging.getLogger("activity_sync.adapters.google_calendar")

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

# The events.list endpoint rejects maxResults above this
_MAX_PAGE_SIZE = 2500


def _rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def meeting_link(raw: dict) -> str | None:
    """Return the video meeting URL: hangoutLink, else the first video entry point."""
    if raw.get("hangoutLink"):
        return str(raw["hangoutLink"])
    conference = raw.get("conferenceData")
    if not isinstance(conference, dict):
        return None
    for entry in conference.get("entryPoints") or []:
        if not isinstance(entry, dict):
            continue
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return str(entry["uri"])
    return None


class GoogleCalendarAdapter(ProviderAdapter):
    """Google Calendar adapter for the user's primary calendar."""

    SOURCE_ID = "google_calendar"
    DISPLAY_NAME = "Google Calendar"

    async def fetch_page(
        self,
        credential: ProviderCredential,
        window: SyncWindow,
        page_size: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        """List events overlapping the window, recurring events expanded.

        Args:
            credential: Bearer credential.
            window:     Slice to list.
            page_size:  maxResults (clamped to the API maximum).
            page_token: Continuation token.

        Returns:
            ProviderPage of raw event resources.
        """
        params: dict[str, str | int] = {
            "timeMin": _rfc3339(window.start),
            "timeMax": _rfc3339(window.end),
            "maxResults": min(page_size, _MAX_PAGE_SIZE),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._get("calendars/primary/events", credential, params=params)
        items = list(data.get("items") or [])
        logger.debug(
            "Calendar: listed %d events for %s..%s", len(items), window.start, window.end
        )
        return ProviderPage(records=items, next_page_token=data.get("nextPageToken"))

    def parse(self, raw: dict) -> NormalizedEvent:
        """Convert a Calendar event resource to NormalizedEvent.

        Raises:
            ParseError: If the event has no id, is cancelled, has no start, or
                        has a time, organizer or attendee that is not an object.
        """
        event_id = raw.get("id")
        if not event_id:
            raise ParseError("Calendar event without id", provider=self.SOURCE_ID)
        event_id = str(event_id)
        if raw.get("status") == "cancelled":
            raise ParseError(
                f"Calendar event {event_id} is cancelled",
                provider=self.SOURCE_ID,
                record_id=event_id,
            )

        start = self._event_time(self._mapping(raw.get("start"), "start", event_id))
        if start is None:
            raise ParseError(
                f"Calendar event {event_id} has no usable start time",
                provider=self.SOURCE_ID,
                record_id=event_id,
            )
        end = self._event_time(self._mapping(raw.get("end"), "end", event_id)) or start

        organizer = self._mapping(raw.get("organizer"), "organizer", event_id)
        attendees = [
            EventAttendee(
                email=str(a.get("email") or ""),
                display_name=str(a.get("displayName") or ""),
                response_status=str(a.get("responseStatus") or ""),
            )
            for a in self._mappings(raw.get("attendees"), "attendees", event_id)
            if not a.get("resource")
        ]

        return NormalizedEvent(
            id=event_id,
            title=raw.get("summary") or "Untitled Event",
            start=start,
            end=end,
            attendees=attendees,
            meeting_link=meeting_link(raw),
            html_link=raw.get("htmlLink"),
            organizer_email=str(organizer.get("email") or ""),
            organizer_name=str(organizer.get("displayName") or ""),
            description=raw.get("description") or "",
            location=raw.get("location") or "",
            provider=self.SOURCE_ID,
        )

    def _event_time(self, value: dict) -> datetime | None:
        """Resolve a Calendar time object ({dateTime} or all-day {date})."""
        if not value:
            return None
        if value.get("dateTime"):
            return self._parse_iso_datetime(value["dateTime"])
        if value.get("date"):
            try:
                day = date.fromisoformat(value["date"])
            except ValueError:
                return None
            return datetime.combine(day, time.min, tzinfo=timezone.utc)
        return None
