"""Request authentication helpers for the portal API."""
from __future__ import annotations

import secrets
from typing import Optional

import anyio
from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import Database
from .errors import AuthError, ForbiddenError
from .identity import JWTIdentityVerifier, Principal


class BearerAuth:
    """Resolve the bearer token on a request into a verified principal."""

    def __init__(self, verifier: JWTIdentityVerifier) -> None:
        self._verifier = verifier
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> Principal:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise AuthError("Unauthorized")
        principal = await self._verifier.verify(credentials.credentials.strip())
        request.state.principal = principal
        return principal


class AdminAuth:
    """Bearer authentication restricted to principals with an admin record."""

    def __init__(self, bearer: BearerAuth, database: Database) -> None:
        self._bearer = bearer
        self._database = database

    async def __call__(self, request: Request) -> Principal:
        principal = await self._bearer(request)
        if not await anyio.to_thread.run_sync(self._database.is_admin, principal.email):
            raise ForbiddenError("Admin privileges required.")
        return principal


class SharedSecretAuth:
    """Constant-time check of a shared secret sent as a header or query parameter."""

    def __init__(self, secret: Optional[str], *, header: str = "x-seed-secret", query: str = "secret") -> None:
        self._secret = secret
        self._header = header
        self._query = query

    async def __call__(self, request: Request) -> None:
        if not self._secret:
            raise AuthError("Seeding is disabled. Configure PORTAL_SEED_SECRET to enable it.")
        provided = request.headers.get(self._header) or request.query_params.get(self._query) or ""
        if not secrets.compare_digest(provided.encode("utf-8"), self._secret.encode("utf-8")):
            raise AuthError("Unauthorized. Provide valid x-seed-secret header or secret query param.")


__all__ = ["AdminAuth", "BearerAuth", "SharedSecretAuth"]
