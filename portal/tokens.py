"""Signed unsubscribe tokens embedded in broadcast emails."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Optional
from urllib.parse import urlencode


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(email: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), email.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def build_unsubscribe_token(email: str, secret: str) -> str:
    """Return ``base64url("email:signature")`` for ``email``."""

    if not secret:
        raise ValueError("Unsubscribe secret must not be empty")
    normalized = email.strip().lower()
    return _b64url_encode(f"{normalized}:{_sign(normalized, secret)}".encode("utf-8"))


def verify_unsubscribe_token(token: str, secret: str) -> Optional[str]:
    """Return the email carried by ``token`` if its signature is valid."""

    if not token or not secret:
        return None
    try:
        decoded = _b64url_decode(token.strip()).decode("utf-8")
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None

    email, separator, signature = decoded.rpartition(":")
    if not separator or not email or not signature:
        return None

    expected = _sign(email, secret)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return None
    return email


def build_unsubscribe_url(site_url: str, email: str, secret: str) -> str:
    query = urlencode({"token": build_unsubscribe_token(email, secret)})
    return f"{site_url.rstrip('/')}/unsubscribe?{query}"


__all__ = ["build_unsubscribe_token", "build_unsubscribe_url", "verify_unsubscribe_token"]
