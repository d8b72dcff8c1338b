"""Idempotent bootstrap of administrators and allowlist entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .database import Database
from .models import DomainRecord
from .policy import extract_domain, normalize_email

logger = logging.getLogger("investor_portal.seed")


@dataclass
class SeedSummary:
    admins_created: List[str] = field(default_factory=list)
    admins_existing: List[str] = field(default_factory=list)
    domains_created: List[str] = field(default_factory=list)
    domains_existing: List[str] = field(default_factory=list)
    emails_created: List[str] = field(default_factory=list)
    emails_existing: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "adminsCreated": list(self.admins_created),
            "adminsExisting": list(self.admins_existing),
            "domainsCreated": list(self.domains_created),
            "domainsExisting": list(self.domains_existing),
            "emailsCreated": list(self.emails_created),
            "emailsExisting": list(self.emails_existing),
        }


def _list_email(database: Database, email: str) -> bool:
    domain = extract_domain(email)
    if domain is None:
        raise ValueError(f"Invalid email address: {email!r}")

    created = False

    def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
        nonlocal created
        if current is None:
            created = True
            return DomainRecord(domain=domain, emails=(email,))
        if email in current.emails:
            return current
        created = True
        return current.with_email(email)

    database.mutate_domain(domain, mutate)
    return created


def seed_database(
    database: Database,
    admin_emails: Iterable[str],
    *,
    domains: Iterable[str] = (),
    emails: Iterable[str] = (),
) -> SeedSummary:
    """Create missing admins, domains and listed emails; safe to re-run."""

    summary = SeedSummary()

    for raw in admin_emails:
        email = normalize_email(raw)
        if extract_domain(email) is None:
            raise ValueError(f"Invalid admin email: {raw!r}")
        if database.add_admin(email):
            summary.admins_created.append(email)
            logger.info("Created admin %s", email)
        else:
            summary.admins_existing.append(email)
        if _list_email(database, email):
            summary.emails_created.append(email)
        else:
            summary.emails_existing.append(email)

    for raw in domains:
        domain = raw.strip().lower()
        if not domain or "." not in domain or domain.startswith("@"):
            raise ValueError(f"Invalid domain: {raw!r}")
        created = False

        def mutate(current: Optional[DomainRecord], domain: str = domain) -> Optional[DomainRecord]:
            nonlocal created
            if current is not None:
                return current
            created = True
            return DomainRecord(domain=domain)

        database.mutate_domain(domain, mutate)
        (summary.domains_created if created else summary.domains_existing).append(domain)

    for raw in emails:
        email = normalize_email(raw)
        if _list_email(database, email):
            summary.emails_created.append(email)
        else:
            summary.emails_existing.append(email)

    return summary


__all__ = ["SeedSummary", "seed_database"]
