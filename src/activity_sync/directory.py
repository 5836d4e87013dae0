"""Contact directory — the per-run email → contact index used by the matcher.

Built once per sync run from the canonical store.  Every contact's primary
email and aliases are indexed lower-cased, so lookups are case-insensitive
and O(1).  Iteration order over contacts is fixed (sorted by contact id) so
that name matching breaks ties the same way on every run.
"""

from __future__ import annotations

import logging
from typing import Iterable

from src.activity_sync.base import CanonicalAccount, CanonicalContact

logger = logging.getLogger("activity_sync.directory")


def normalize_email(value: str | None) -> str | None:
    """Lower-case and trim an address; None if it is not a usable address."""
    if not value:
        return None
    addr = value.strip().lower()
    local, sep, domain = addr.rpartition("@")
    if not sep or not local or not domain or " " in addr:
        return None
    return addr


class ContactDirectory:
    """In-memory lookup index over canonical contacts.

    Usage::

        directory = ContactDirectory.build(contacts, accounts)
        contact = directory.lookup("Jane.Doe@Y.com")
        account_id = directory.account_for(contact.id)
    """

    def __init__(self) -> None:
        self._by_email: dict[str, CanonicalContact] = {}
        self._contacts: list[CanonicalContact] = []
        self._account_by_contact: dict[str, str] = {}
        self.skipped: list[str] = []

    @classmethod
    def build(
        cls,
        contacts: Iterable[CanonicalContact],
        accounts: Iterable[CanonicalAccount] = (),
    ) -> "ContactDirectory":
        """Index contacts by every usable address and map them to accounts.

        Contacts with no usable address (primary or alias) are logged and
        skipped.  When two contacts claim the same address, the one earlier
        in directory order keeps it.

        Args:
            contacts: Canonical contacts from the store, in any order.
            accounts: Canonical accounts; a contact belongs to the first
                      account (by id) that names it as primary contact.

        Returns:
            A populated ContactDirectory.
        """
        directory = cls()

        for contact in sorted(contacts, key=lambda c: c.id):
            addresses = [a for a in (normalize_email(e) for e in contact.emails) if a]
            if not addresses:
                logger.warning(
                    "Directory: skipping contact %s (%r) with no usable email",
                    contact.id, contact.name,
                )
                directory.skipped.append(contact.id)
                continue

            directory._contacts.append(contact)
            for addr in addresses:
                owner = directory._by_email.setdefault(addr, contact)
                if owner.id != contact.id:
                    logger.warning(
                        "Directory: %s is claimed by contacts %s and %s; keeping %s",
                        addr, owner.id, contact.id, owner.id,
                    )

        for account in sorted(accounts, key=lambda a: a.id):
            if account.primary_contact_id:
                directory._account_by_contact.setdefault(
                    account.primary_contact_id, account.id
                )

        logger.info(
            "Directory: %d contacts, %d addresses, %d skipped",
            len(directory._contacts), len(directory._by_email), len(directory.skipped),
        )
        return directory

    def lookup(self, email: str | None) -> CanonicalContact | None:
        """Return the contact owning an address (case-insensitive), if any."""
        addr = normalize_email(email)
        if addr is None:
            return None
        return self._by_email.get(addr)

    def account_for(self, contact_id: str | None) -> str | None:
        """Return the id of the account the contact currently belongs to."""
        if contact_id is None:
            return None
        return self._account_by_contact.get(contact_id)

    @property
    def contacts(self) -> tuple[CanonicalContact, ...]:
        """Indexed contacts in deterministic (id) order."""
        return tuple(self._contacts)

    @property
    def address_count(self) -> int:
        return len(self._by_email)

    def __len__(self) -> int:
        return len(self._contacts)
