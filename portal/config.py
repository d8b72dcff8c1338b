"""Configuration management for the investor portal."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

_DEFAULT_SITE_URL = "http://localhost:8888"


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class PortalSettings:
    """Runtime settings resolved from ``PORTAL_*`` environment variables."""

    database_path: Optional[str] = None
    environment: str = "development"
    site_url: str = _DEFAULT_SITE_URL
    api_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwks_url: Optional[str] = None
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None
    resend_api_key: Optional[str] = None
    resend_base_url: str = "https://api.resend.com"
    email_from: Optional[str] = None
    email_reply_to: Optional[str] = None
    email_subject_prefix: str = "Investor Update"
    unsubscribe_secret: Optional[str] = None
    seed_secret: Optional[str] = None
    seed_admin_email: Optional[str] = None
    rate_limit_cleanup_interval: float = 3600.0

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def public_api_url(self) -> str:
        return (self.api_url or self.site_url).rstrip("/")

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key and self.email_from)

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "PortalSettings":
        env = os.environ if environ is None else environ
        interval_raw = env.get("PORTAL_RATE_LIMIT_CLEANUP_INTERVAL", "").strip()
        try:
            interval = float(interval_raw) if interval_raw else 3600.0
        except ValueError as exc:
            raise ValueError("PORTAL_RATE_LIMIT_CLEANUP_INTERVAL must be a number of seconds") from exc

        environment = _optional(env, "PORTAL_ENVIRONMENT") or "development"
        if _env_flag(env.get("PORTAL_PRODUCTION")):
            environment = "production"

        return PortalSettings(
            database_path=_optional(env, "PORTAL_DB_PATH"),
            environment=environment,
            site_url=(_optional(env, "PORTAL_SITE_URL") or _DEFAULT_SITE_URL).rstrip("/"),
            api_url=_optional(env, "PORTAL_API_URL"),
            jwt_secret=_optional(env, "PORTAL_JWT_SECRET"),
            jwks_url=_optional(env, "PORTAL_JWKS_URL"),
            jwt_issuer=_optional(env, "PORTAL_JWT_ISSUER"),
            jwt_audience=_optional(env, "PORTAL_JWT_AUDIENCE"),
            resend_api_key=_optional(env, "PORTAL_RESEND_API_KEY"),
            resend_base_url=_optional(env, "PORTAL_RESEND_BASE_URL") or "https://api.resend.com",
            email_from=_optional(env, "PORTAL_EMAIL_FROM"),
            email_reply_to=_optional(env, "PORTAL_EMAIL_REPLY_TO"),
            email_subject_prefix=_optional(env, "PORTAL_EMAIL_SUBJECT_PREFIX") or "Investor Update",
            unsubscribe_secret=_optional(env, "PORTAL_UNSUBSCRIBE_SECRET"),
            seed_secret=_optional(env, "PORTAL_SEED_SECRET"),
            seed_admin_email=_optional(env, "PORTAL_SEED_ADMIN_EMAIL"),
            rate_limit_cleanup_interval=interval,
        )


@dataclass(frozen=True)
class SeedData:
    """Initial administrators and allowlist entries."""

    admins: Tuple[str, ...] = ()
    domains: Tuple[str, ...] = ()
    emails: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "SeedData":
        def _strings(key: str) -> Tuple[str, ...]:
            raw = data.get(key) or []
            if isinstance(raw, str):
                raw = [raw]
            if not isinstance(raw, list):
                raise ValueError(f"Seed field '{key}' must be a list of strings")
            values = []
            for item in raw:
                if not isinstance(item, str):
                    raise ValueError(f"Seed field '{key}' must contain only strings")
                stripped = item.strip().lower()
                if stripped:
                    values.append(stripped)
            return tuple(values)

        return SeedData(admins=_strings("admins"), domains=_strings("domains"), emails=_strings("emails"))


def load_seed_file(path: Path) -> SeedData:
    """Load seed data from a YAML file."""
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Seed file must contain a mapping with 'admins', 'domains' and 'emails' keys")
    return SeedData.from_dict(raw)


__all__ = ["PortalSettings", "SeedData", "load_seed_file"]
