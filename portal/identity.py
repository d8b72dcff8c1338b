"""Bearer token verification against the identity provider."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anyio
import jwt

from .errors import AuthError, ValidationError

_ASYMMETRIC_ALGORITHMS: List[str] = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


@dataclass(frozen=True)
class Principal:
    """Verified identity attached to a request."""

    uid: str
    email: str


class JWTIdentityVerifier:
    """Validate ID tokens issued by the identity provider.

    Tokens are checked either with a shared HS256 secret or with the
    provider's signing keys published at ``jwks_url``.
    """

    def __init__(
        self,
        *,
        secret: Optional[str] = None,
        jwks_url: Optional[str] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> None:
        if not secret and not jwks_url:
            raise ValueError("Either a JWT secret or a JWKS URL must be configured")
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._jwk_client = jwt.PyJWKClient(jwks_url) if jwks_url else None

    async def verify(self, token: str) -> Principal:
        if not token:
            raise AuthError("Unauthorized")
        try:
            claims = await anyio.to_thread.run_sync(self._decode, token)
        except jwt.PyJWTError as exc:
            raise AuthError(f"Invalid token: {exc}") from exc

        uid = str(claims.get("sub") or "").strip()
        if not uid:
            raise AuthError("Token missing subject")
        email = str(claims.get("email") or "").strip().lower()
        if not email:
            raise ValidationError("Missing email.")
        return Principal(uid=uid, email=email)

    def _decode(self, token: str) -> Dict[str, Any]:
        options = {"require": ["exp", "sub"], "verify_aud": self._audience is not None}
        if self._jwk_client is not None:
            signing_key = self._jwk_client.get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=_ASYMMETRIC_ALGORITHMS,
                issuer=self._issuer,
                audience=self._audience,
                options=options,
            )
        return jwt.decode(
            token,
            self._secret,
            algorithms=["HS256"],
            issuer=self._issuer,
            audience=self._audience,
            options=options,
        )


__all__ = ["JWTIdentityVerifier", "Principal"]
