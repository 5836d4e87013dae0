"""Error taxonomy for the activity sync engine.

The orchestrator applies a different policy to each branch of this tree:

    ProviderError
        CredentialError  — fatal to the run (surfaced as 401)
        RateLimited      — retried with backoff, then dropped and counted
        TransientError   — retried with backoff, then dropped and counted
        ParseError       — one malformed record, skipped and counted
    StoreError
        StoreConflict    — duplicate-key race, treated as success
        StoreUnavailable — fatal to the run (surfaced as 500)
        StoreWriteError  — one failed write, counted as a persist failure
"""

from __future__ import annotations

import httpx


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


# ---------------------------------------------------------------------------
# Provider-side errors
# ---------------------------------------------------------------------------


class ProviderError(SyncError):
    """A failure talking to (or understanding) an external provider.

    Attributes:
        provider:    Provider slug ('gmail', 'google_calendar', 'feed').
        status_code: HTTP status that produced the error, if any.
    """

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class CredentialError(ProviderError):
    """The bearer credential is missing, expired, or was rejected."""


class RateLimited(ProviderError):
    """The provider throttled the request.

    Attributes:
        retry_after: Seconds the provider asked us to wait, when it said so.
    """

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after = retry_after


class TransientError(ProviderError):
    """Timeouts, connection resets and 5xx responses."""


class ParseError(ProviderError):
    """A single provider record (or feed document) could not be normalized.

    Attributes:
        record_id: Provider id of the offending record, when known.
    """

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        record_id: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.record_id = record_id


# ---------------------------------------------------------------------------
# Store-side errors
# ---------------------------------------------------------------------------


class StoreError(SyncError):
    """Base class for persistence failures."""


class StoreConflict(StoreError):
    """A unique-key violation caused by a concurrent duplicate insert."""


class StoreUnavailable(StoreError):
    """The persistence layer cannot be reached."""


class StoreWriteError(StoreError):
    """Any other failed write; scoped to the record being written."""


# ---------------------------------------------------------------------------
# HTTP classification
# ---------------------------------------------------------------------------


def _retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is rare from these providers; fall back to backoff
        return None


def classify_response(response: httpx.Response, provider: str) -> ProviderError | None:
    """Map a non-success HTTP response to the matching ProviderError.

    Args:
        response: Completed httpx response.
        provider: Provider slug used for error context.

    Returns:
        A ProviderError instance, or None if the status is 2xx or 304.
    """
    status = response.status_code
    if 200 <= status < 300 or status == 304:
        return None

    body = response.text[:200] if response.content else ""

    if status == 403 and "ratelimitexceeded" in response.text.lower():
        # Gmail reports per-user quota exhaustion as 403 rather than 429
        return RateLimited(
            f"{provider}: quota exceeded",
            provider=provider,
            status_code=status,
            retry_after=_retry_after_seconds(response.headers.get("Retry-After")),
        )
    if status in (401, 403):
        return CredentialError(
            f"{provider}: credential rejected ({status}) {body}".strip(),
            provider=provider,
            status_code=status,
        )
    if status == 429:
        return RateLimited(
            f"{provider}: rate limited",
            provider=provider,
            retry_after=_retry_after_seconds(response.headers.get("Retry-After")),
        )
    if status == 408 or status >= 500:
        return TransientError(
            f"{provider}: upstream error ({status}) {body}".strip(),
            provider=provider,
            status_code=status,
        )
    return ProviderError(
        f"{provider}: unexpected response ({status}) {body}".strip(),
        provider=provider,
        status_code=status,
    )


def classify_transport_error(exc: httpx.HTTPError, provider: str) -> ProviderError:
    """Map an httpx transport exception (timeout, reset, DNS) to TransientError."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientError(f"{provider}: request timed out", provider=provider)
    return TransientError(f"{provider}: transport error: {exc}", provider=provider)
