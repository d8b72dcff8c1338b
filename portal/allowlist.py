"""Allowlist mutations and the profile flags that mirror them."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional

import anyio

from .database import Database
from .errors import ConflictError, NotFoundError, ValidationError
from .models import DEFAULT_SUBSCRIBED, DomainRecord, UserProfile
from .policy import ApprovalPolicy, extract_domain, normalize_email
from .tasks import BackgroundDispatcher

logger = logging.getLogger("investor_portal.allowlist")

WelcomeNotifier = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class AllowlistEmailEntry:
    email: str
    subscribed: bool
    last_login: Optional[datetime]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class AllowlistDomainEntry:
    domain: str
    emails: List[AllowlistEmailEntry]


def _require_email(value: str) -> tuple[str, str]:
    email = normalize_email(value)
    domain = extract_domain(email)
    if domain is None or not email.split("@", 1)[0]:
        raise ValidationError("Invalid email format.")
    return email, domain


def _require_domain(value: str) -> str:
    domain = value.strip().lower()
    if not domain or "." not in domain or domain.startswith("@"):
        raise ValidationError("Invalid domain format (e.g., 'example.com').")
    return domain


class AllowlistSynchronizer:
    """Mutate domain records and keep user profiles consistent with them.

    Domain edits are single read-modify-write transactions keyed by domain.
    Store errors propagate; only the welcome email and the post-login
    bookkeeping write are best-effort.
    """

    def __init__(
        self,
        database: Database,
        policy: ApprovalPolicy,
        *,
        dispatcher: Optional[BackgroundDispatcher] = None,
        welcome_notifier: Optional[WelcomeNotifier] = None,
    ) -> None:
        self._database = database
        self._policy = policy
        self._dispatcher = dispatcher
        self._welcome_notifier = welcome_notifier

    async def add_email(self, value: str) -> DomainRecord:
        email, domain = _require_email(value)

        def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
            if current is None:
                return DomainRecord(domain=domain, emails=(email,))
            if email in current.emails:
                raise ConflictError("Email already exists.")
            return current.with_email(email)

        record = await anyio.to_thread.run_sync(self._database.mutate_domain, domain, mutate)
        await anyio.to_thread.run_sync(
            partial(self._database.update_user_flags, email, approved=True, subscribed=True)
        )
        logger.info("Added %s to the allowlist", email)

        if self._dispatcher is not None and self._welcome_notifier is not None:
            self._dispatcher.dispatch(f"welcome-email:{email}", self._welcome_notifier, email)
        return record

    async def remove_email(self, value: str) -> bool:
        """Remove ``value`` and return ``True`` if its domain record was deleted."""

        email, domain = _require_email(value)

        def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
            if current is None:
                raise NotFoundError("Domain not found.")
            if email not in current.emails:
                raise NotFoundError("Email not found.")
            remaining = current.without_email(email)
            if not remaining.emails:
                return None
            return remaining

        record = await anyio.to_thread.run_sync(self._database.mutate_domain, domain, mutate)
        await anyio.to_thread.run_sync(partial(self._database.update_user_flags, email, approved=False))
        logger.info("Removed %s from the allowlist", email)
        return record is None

    async def add_domain(self, value: str) -> DomainRecord:
        domain = _require_domain(value)

        def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
            if current is not None:
                raise ConflictError("Domain already exists.")
            return DomainRecord(domain=domain)

        record = await anyio.to_thread.run_sync(self._database.mutate_domain, domain, mutate)
        logger.info("Added domain %s to the allowlist", domain)
        return record

    async def remove_domain(self, value: str) -> None:
        domain = _require_domain(value)

        def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
            if current is None:
                raise NotFoundError("Domain not found.")
            return None

        await anyio.to_thread.run_sync(self._database.mutate_domain, domain, mutate)
        logger.info("Removed domain %s from the allowlist", domain)

    async def sync_on_login(self, uid: str, value: str) -> UserProfile:
        """Refresh the profile for a freshly authenticated principal."""

        email = normalize_email(value)
        approved = await self._policy.is_approved(email)
        profile = await anyio.to_thread.run_sync(
            partial(self._database.record_login, uid, email, approved=approved)
        )
        if approved:
            await self._ensure_listed(email)
        return profile

    async def list_allowlist(self) -> List[AllowlistDomainEntry]:
        domains = await anyio.to_thread.run_sync(self._database.list_domains)
        users = await anyio.to_thread.run_sync(self._database.list_users)
        by_email: Dict[str, UserProfile] = {}
        for user in users:
            by_email.setdefault(user.email, user)

        entries: List[AllowlistDomainEntry] = []
        for record in domains:
            emails: List[AllowlistEmailEntry] = []
            for email in record.emails:
                profile = by_email.get(email)
                emails.append(
                    AllowlistEmailEntry(
                        email=email,
                        subscribed=profile.is_subscribed if profile else DEFAULT_SUBSCRIBED,
                        last_login=profile.last_login if profile else None,
                        created_at=profile.created_at if profile else None,
                    )
                )
            entries.append(AllowlistDomainEntry(domain=record.domain, emails=emails))
        return entries

    async def _ensure_listed(self, email: str) -> None:
        domain = extract_domain(email)
        if domain is None:
            return

        # A record removed since the policy check is not recreated here.
        def mutate(current: Optional[DomainRecord]) -> Optional[DomainRecord]:
            if current is None or email in current.emails:
                return current
            return current.with_email(email)

        try:
            await anyio.to_thread.run_sync(self._database.mutate_domain, domain, mutate)
        except sqlite3.Error:
            logger.warning("Could not list %s under domain %s", email, domain, exc_info=True)


__all__ = [
    "AllowlistDomainEntry",
    "AllowlistEmailEntry",
    "AllowlistSynchronizer",
    "WelcomeNotifier",
]
