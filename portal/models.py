"""Records persisted by the portal store and values passed between services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

# A profile without an explicit flag receives broadcasts (opt-out, not opt-in).
DEFAULT_SUBSCRIBED = True


@dataclass(frozen=True)
class DomainRecord:
    """Allowlist entry for a domain together with its explicitly listed emails."""

    domain: str
    emails: Tuple[str, ...] = ()

    def with_email(self, email: str) -> "DomainRecord":
        return DomainRecord(domain=self.domain, emails=(*self.emails, email))

    def without_email(self, email: str) -> "DomainRecord":
        return DomainRecord(
            domain=self.domain,
            emails=tuple(item for item in self.emails if item != email),
        )


@dataclass(frozen=True)
class UserProfile:
    """Portal user, keyed by the identity provider's stable id."""

    uid: str
    email: str
    approved: bool
    subscribed: Optional[bool]
    created_at: datetime
    last_login: Optional[datetime]

    @property
    def is_subscribed(self) -> bool:
        if self.subscribed is None:
            return DEFAULT_SUBSCRIBED
        return self.subscribed


@dataclass(frozen=True)
class AdminRecord:
    email: str
    created_at: datetime


@dataclass(frozen=True)
class UpdateDoc:
    """A broadcast timeline update."""

    id: str
    title: str
    content_md: str
    created_at: datetime
    email_sent: bool = False
    sent_count: Optional[int] = None
    failed_count: Optional[int] = None


@dataclass(frozen=True)
class RateLimitRecord:
    principal_id: str
    count: int
    window_start: int
    last_request: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int


@dataclass(frozen=True)
class RecipientFailure:
    email: str
    error: str


@dataclass
class BroadcastReport:
    """Outcome of a broadcast that delivered to at least one recipient."""

    update_id: str
    recipients: int
    sent: int = 0
    failed: int = 0
    failed_recipients: List[RecipientFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.failed > 0


__all__ = [
    "AdminRecord",
    "BroadcastReport",
    "DEFAULT_SUBSCRIBED",
    "DomainRecord",
    "RateLimitRecord",
    "RateLimitResult",
    "RecipientFailure",
    "UpdateDoc",
    "UserProfile",
]
