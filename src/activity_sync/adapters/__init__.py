"""Provider adapters for the activity sync engine.

Each adapter implements the ProviderAdapter ABC and handles:
- Paged listing of provider records inside a time window
- Hydrating listed stubs into full records where the provider needs it
- Normalizing provider-specific JSON into canonical records

Available adapters:
    GmailAdapter          — Gmail API v1 (messages)
    GoogleCalendarAdapter — Google Calendar API v3 (events)
"""

from src.activity_sync.adapters.gmail import GMAIL_API_BASE, GmailAdapter
from src.activity_sync.adapters.google_calendar import (
    CALENDAR_API_BASE,
    GoogleCalendarAdapter,
)

__all__ = [
    "GmailAdapter",
    "GoogleCalendarAdapter",
    "GMAIL_API_BASE",
    "CALENDAR_API_BASE",
    "ADAPTER_REGISTRY",
    "get_adapter",
]

# Registry: provider slug → adapter class
ADAPTER_REGISTRY: dict[str, type] = {
    "gmail": GmailAdapter,
    "google_calendar": GoogleCalendarAdapter,
}


def get_adapter(source_id: str) -> "type":
    """Return the adapter class for a given provider slug.

    Args:
        source_id: e.g. 'gmail', 'google_calendar'

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{source_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[source_id]
