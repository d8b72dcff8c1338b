"""Persist a timeline update and email it to the subscribed allowlist."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterable, List, Optional, Sequence, TypeVar

import anyio

from .database import Database
from .errors import BroadcastFailedError, UpstreamError, ValidationError
from .mailer import Mailer, MailerError, render_update_email
from .models import BroadcastReport, RecipientFailure, UpdateDoc
from .tokens import build_unsubscribe_url

logger = logging.getLogger("investor_portal.broadcast")

T = TypeVar("T")

BATCH_SIZE = 50
MIN_CONTENT_LENGTH = 20
DEFAULT_SEND_TIMEOUT = 30.0


@dataclass(frozen=True)
class BroadcastSettings:
    site_url: str
    api_url: str
    subject_prefix: str = "Investor Update"
    unsubscribe_secret: Optional[str] = None
    reply_to: Optional[str] = None
    batch_size: int = BATCH_SIZE
    send_timeout: float = DEFAULT_SEND_TIMEOUT


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[index:index + size]) for index in range(0, len(items), size)]


def collect_recipients(domain_emails: Iterable[Iterable[str]], subscriptions: Dict[str, bool]) -> List[str]:
    """Union listed emails (first-seen order) and drop explicit opt-outs."""

    seen: Dict[str, None] = {}
    for emails in domain_emails:
        for email in emails:
            if isinstance(email, str) and "@" in email:
                seen.setdefault(email.strip().lower(), None)
    return [email for email in seen if subscriptions.get(email) is not False]


class BroadcastOrchestrator:
    """Send an update in sequential batches of concurrent deliveries."""

    def __init__(
        self,
        database: Database,
        mailer: Optional[Mailer],
        settings: BroadcastSettings,
    ) -> None:
        self._database = database
        self._mailer = mailer
        self._settings = settings

    async def send_update(self, title: str, content_md: str) -> BroadcastReport:
        title = title.strip()
        content_md = content_md.strip()
        if not title or len(content_md) < MIN_CONTENT_LENGTH:
            raise ValidationError("Title and content required.")

        update = await anyio.to_thread.run_sync(self._database.create_update, title, content_md)
        recipients = await self._resolve_recipients()

        if not recipients:
            await anyio.to_thread.run_sync(self._database.mark_update_sent, update.id)
            logger.info("Update %s stored; no subscribed recipients", update.id)
            return BroadcastReport(update_id=update.id, recipients=0)

        mailer = self._mailer
        if mailer is None:
            await anyio.to_thread.run_sync(self._database.delete_update, update.id)
            raise UpstreamError("Email configuration missing.")

        report = BroadcastReport(update_id=update.id, recipients=len(recipients))
        try:
            for batch in chunked(recipients, self._settings.batch_size):
                async with anyio.create_task_group() as task_group:
                    for recipient in batch:
                        task_group.start_soon(self._deliver, mailer, update, recipient, report)
        except Exception as exc:
            await anyio.to_thread.run_sync(self._database.delete_update, update.id)
            logger.exception("Update %s rolled back; broadcast aborted after %s sends", update.id, report.sent)
            raise UpstreamError("Failed to send update.") from exc

        await anyio.to_thread.run_sync(
            partial(self._database.record_update_delivery, update.id, sent=report.sent, failed=report.failed)
        )

        if report.sent == 0 and report.failed > 0:
            await anyio.to_thread.run_sync(self._database.delete_update, update.id)
            logger.error("Update %s rolled back; all %s sends failed", update.id, report.failed)
            raise BroadcastFailedError(
                "All emails failed to send. Please check your email configuration and try again.",
                failed=report.failed,
                failures=list(report.failed_recipients),
            )

        logger.info(
            "Update %s sent to %s recipients (%s failed)",
            update.id,
            report.sent,
            report.failed,
        )
        return report

    async def _resolve_recipients(self) -> List[str]:
        domains = await anyio.to_thread.run_sync(self._database.list_domains)
        users = await anyio.to_thread.run_sync(self._database.list_users)
        subscriptions = {user.email: user.is_subscribed for user in users}
        return collect_recipients((record.emails for record in domains), subscriptions)

    async def _deliver(
        self,
        mailer: Mailer,
        update: UpdateDoc,
        recipient: str,
        report: BroadcastReport,
    ) -> None:
        settings = self._settings
        unsubscribe_url = None
        if settings.unsubscribe_secret:
            unsubscribe_url = build_unsubscribe_url(settings.api_url, recipient, settings.unsubscribe_secret)
        message = render_update_email(
            update,
            recipient,
            site_url=settings.site_url,
            subject_prefix=settings.subject_prefix,
            unsubscribe_url=unsubscribe_url,
            reply_to=settings.reply_to,
        )

        try:
            with anyio.fail_after(settings.send_timeout):
                await mailer.send(message)
        except MailerError as exc:
            error = str(exc) or "Email service rejected the message"
        except TimeoutError:
            error = "Timed out waiting for the email service"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        else:
            report.sent += 1
            return

        report.failed += 1
        report.failed_recipients.append(RecipientFailure(email=recipient, error=error))
        logger.warning("Failed to send update %s to %s: %s", update.id, recipient, error)


__all__ = [
    "BATCH_SIZE",
    "BroadcastOrchestrator",
    "BroadcastSettings",
    "MIN_CONTENT_LENGTH",
    "chunked",
    "collect_recipients",
]
