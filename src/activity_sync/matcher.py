"""Record matcher — associate provider records with canonical contacts.

Two strategies are tried in a fixed order and the first success wins:

1. Alias match: the record's from-address, then each to-address, looked up
   case-insensitively in the ContactDirectory.
2. Name match: only when no address matched.  For each contact in directory
   order, its full name and then its first name are tested as
   case-insensitive substrings of the from-name, the to-field and the
   subject, in that order.

Matching is total: it never raises, and a record nobody matches gets
``MatchStrategy.NONE``.
"""

from __future__ import annotations

import logging
from typing import Iterable

from src.activity_sync.base import (
    CanonicalContact,
    MatchFields,
    MatchResult,
    MatchStrategy,
    NormalizedRecord,
)
from src.activity_sync.directory import ContactDirectory

logger = logging.getLogger("activity_sync.matcher")


def _alias_match(fields: MatchFields, directory: ContactDirectory) -> CanonicalContact | None:
    contact = directory.lookup(fields.from_email)
    if contact is not None:
        return contact
    for addr in fields.to_addresses:
        contact = directory.lookup(addr)
        if contact is not None:
            return contact
    return None


def _name_hit(contact: CanonicalContact, haystacks: list[str], min_first_name_length: int) -> bool:
    full = " ".join(contact.name.lower().split())
    if not full:
        return False
    first = contact.first_name.lower()
    if len(first) < min_first_name_length:
        first = ""

    for text in haystacks:
        if not text:
            continue
        if full in text:
            return True
        if first and first in text:
            return True
    return False


def _name_match(
    fields: MatchFields,
    directory: ContactDirectory,
    min_first_name_length: int,
) -> CanonicalContact | None:
    haystacks = [
        " ".join(fields.from_name.lower().split()),
        " ".join(fields.to_field.lower().split()),
        " ".join(fields.subject.lower().split()),
    ]
    if not any(haystacks):
        return None
    for contact in directory.contacts:
        if _name_hit(contact, haystacks, min_first_name_length):
            return contact
    return None


def match_record(
    record: NormalizedRecord,
    directory: ContactDirectory,
    min_first_name_length: int = 2,
) -> MatchResult:
    """Match one normalized record against the directory.

    Args:
        record:                Parsed message or event.
        directory:             Directory built for this run.
        min_first_name_length: First names shorter than this never name-match.

    Returns:
        MatchResult carrying the contact, its account and the strategy used.
    """
    fields = record.match_fields()

    contact = _alias_match(fields, directory)
    strategy = MatchStrategy.ALIAS
    if contact is None:
        contact = _name_match(fields, directory, min_first_name_length)
        strategy = MatchStrategy.NAME
    if contact is None:
        return MatchResult(record_id=record.id)

    return MatchResult(
        record_id=record.id,
        matched_contact_id=contact.id,
        matched_account_id=directory.account_for(contact.id),
        strategy=strategy,
    )


def match_batch(
    records: Iterable[NormalizedRecord],
    directory: ContactDirectory,
    min_first_name_length: int = 2,
) -> list[MatchResult]:
    """Match every record, preserving input order."""
    results = [match_record(r, directory, min_first_name_length) for r in records]
    logger.debug(
        "Matcher: %d records, %d alias, %d name",
        len(results),
        sum(1 for r in results if r.strategy is MatchStrategy.ALIAS),
        sum(1 for r in results if r.strategy is MatchStrategy.NAME),
    )
    return results
