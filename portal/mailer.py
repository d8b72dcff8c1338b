"""Outbound email delivery through the Resend HTTP API."""
from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .models import UpdateDoc


DEFAULT_RESEND_URL = "https://api.resend.com"
EXCERPT_LENGTH = 240

_IMAGE = re.compile(r"!\[[^\]]*]\([^)]*\)")
_LINK = re.compile(r"\[([^\]]+)]\([^)]*\)")
_MARKUP = re.compile(r"[`*_>#-]")
_WHITESPACE = re.compile(r"\s+")


class MailerError(RuntimeError):
    """Raised when the email service rejects or fails to accept a message."""


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    html: str
    text: str
    idempotency_key: str
    reply_to: Optional[str] = None


class Mailer(Protocol):
    async def send(self, message: OutboundEmail) -> None:
        ...


class ResendMailer:
    """Send one message per request to Resend's ``/emails`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        reply_to: Optional[str] = None,
        base_url: str = DEFAULT_RESEND_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key or not sender:
            raise ValueError("Resend API key and sender address are required")
        self._sender = sender
        self._reply_to = reply_to
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def send(self, message: OutboundEmail) -> None:
        payload = {
            "from": self._sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        reply_to = message.reply_to or self._reply_to
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            response = await self._client.post(
                "/emails",
                json=payload,
                headers={"Idempotency-Key": message.idempotency_key},
            )
        except httpx.HTTPError as exc:
            raise MailerError(f"Email service unreachable: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise MailerError(f"Email service returned {response.status_code}: {detail}")

    async def aclose(self) -> None:
        await self._client.aclose()


def strip_markdown(content: str) -> str:
    """Reduce markdown to a single line of plain text for email excerpts."""

    text = _IMAGE.sub("", content)
    text = _LINK.sub(r"\1", text)
    text = _MARKUP.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def render_welcome_email(recipient: str, *, site_url: str, reply_to: Optional[str]) -> OutboundEmail:
    portal_url = f"{site_url.rstrip('/')}/investor"
    subject = "Welcome to Investor Updates"
    contact_html = ""
    contact_text = ""
    if reply_to:
        contact_html = (
            '<p style="margin-top: 32px; font-size: 12px; color: #64748b;">'
            f'Questions? Contact us at <a href="mailto:{html.escape(reply_to)}">{html.escape(reply_to)}</a></p>'
        )
        contact_text = f"\n\nQuestions? Contact us at {reply_to}"

    body_html = (
        '<div style="font-family: Arial, sans-serif; color: #0f172a;">'
        f"<h2>{html.escape(subject)}</h2>"
        '<p style="color: #475569; line-height: 1.6;">You have been subscribed to receive investor '
        "updates. We'll keep you informed about milestones, metrics and key developments.</p>"
        f'<p><a href="{html.escape(portal_url)}">View Investor Portal</a></p>'
        f"{contact_html}</div>"
    )
    body_text = (
        f"{subject}\n\nYou have been subscribed to receive investor updates. "
        "We'll keep you informed about milestones, metrics and key developments.\n\n"
        f"View Investor Portal: {portal_url}{contact_text}"
    )
    return OutboundEmail(
        to=recipient,
        subject=subject,
        html=body_html,
        text=body_text,
        idempotency_key=f"welcome-{recipient.lower()}",
        reply_to=reply_to,
    )


def render_update_email(
    update: UpdateDoc,
    recipient: str,
    *,
    site_url: str,
    subject_prefix: str,
    unsubscribe_url: Optional[str],
    reply_to: Optional[str],
) -> OutboundEmail:
    update_url = f"{site_url.rstrip('/')}/investor?update={update.id}"
    excerpt = strip_markdown(update.content_md)[:EXCERPT_LENGTH]
    subject = f"{subject_prefix}: {update.title}"

    footer_html = ""
    footer_text = ""
    if unsubscribe_url:
        footer_html = (
            '<div style="margin-top: 24px; padding-top: 16px; border-top: 1px solid #e2e8f0; '
            'font-size: 12px; color: #64748b;">'
            f'<a href="{html.escape(unsubscribe_url)}">Unsubscribe from investor updates</a></div>'
        )
        footer_text = f"\n\nUnsubscribe: {unsubscribe_url}"

    body_html = (
        '<div style="font-family: Arial, sans-serif; color: #0f172a;">'
        f'<h2 style="margin-bottom: 8px;">{html.escape(update.title)}</h2>'
        f'<p style="margin-top: 0; color: #475569;">{html.escape(excerpt)}</p>'
        f'<p><a href="{html.escape(update_url)}">View full update</a></p>'
        f"{footer_html}</div>"
    )
    body_text = f"{update.title}\n\n{excerpt}\n\nView full update: {update_url}{footer_text}"

    return OutboundEmail(
        to=recipient,
        subject=subject,
        html=body_html,
        text=body_text,
        idempotency_key=f"update-{update.id}-{recipient}",
        reply_to=reply_to,
    )


__all__ = [
    "Mailer",
    "MailerError",
    "OutboundEmail",
    "ResendMailer",
    "render_update_email",
    "render_welcome_email",
    "strip_markdown",
]
