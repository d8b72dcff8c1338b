"""Allowlist approval decisions."""
from __future__ import annotations

from typing import FrozenSet, Optional

import anyio

from .database import Database
from .models import DomainRecord

# Consumer webmail hosts. A record for one of these domains only approves the
# addresses it lists; any other domain record approves the whole domain.
GENERIC_EMAIL_PROVIDERS: FrozenSet[str] = frozenset(
    {
        "gmail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "aol.com",
        "icloud.com",
        "protonmail.com",
        "proton.me",
        "mail.com",
        "yandex.com",
        "zoho.com",
        "gmx.com",
        "live.com",
        "msn.com",
        "inbox.com",
        "fastmail.com",
        "tutanota.com",
        "hey.com",
    }
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def extract_domain(email: str) -> Optional[str]:
    """Return the lowercase domain of ``email`` or ``None`` when malformed."""

    normalized = normalize_email(email)
    if "@" not in normalized:
        return None
    domain = normalized.split("@", 1)[1]
    return domain or None


def is_generic_email_provider(domain: str) -> bool:
    return domain.strip().lower() in GENERIC_EMAIL_PROVIDERS


def evaluate(email: str, record: Optional[DomainRecord]) -> bool:
    """Decide approval for ``email`` given the record stored for its domain."""

    normalized = normalize_email(email)
    domain = extract_domain(normalized)
    if domain is None or record is None:
        return False
    if is_generic_email_provider(domain):
        return normalized in {item.lower() for item in record.emails}
    return True


class ApprovalPolicy:
    """Read-only approval checks backed by the allowlist domain records.

    Store failures propagate to the caller; a lookup error never approves.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    async def is_approved(self, email: str) -> bool:
        domain = extract_domain(email)
        if domain is None:
            return False
        record = await anyio.to_thread.run_sync(self._database.get_domain, domain)
        return evaluate(email, record)


__all__ = [
    "ApprovalPolicy",
    "GENERIC_EMAIL_PROVIDERS",
    "evaluate",
    "extract_domain",
    "is_generic_email_provider",
    "normalize_email",
]
