"""HTTP API for the investor portal."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, Dict, Iterable, List, Literal, Optional

import anyio
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .allowlist import AllowlistSynchronizer
from .broadcast import BroadcastOrchestrator, BroadcastSettings
from .config import PortalSettings
from .database import Database, resolve_database_path
from .errors import (
    BroadcastFailedError,
    ForbiddenError,
    PortalError,
    RateLimitError,
    UpstreamError,
    ValidationError,
)
from .identity import JWTIdentityVerifier, Principal
from .mailer import Mailer, ResendMailer, render_welcome_email
from .models import BroadcastReport, RecipientFailure, UpdateDoc
from .policy import ApprovalPolicy, extract_domain, normalize_email
from .ratelimit import BROADCAST_RATE_LIMIT, RateLimitJanitor, RateLimiter
from .security import AdminAuth, BearerAuth, SharedSecretAuth
from .seed import seed_database
from .tasks import BackgroundDispatcher
from .tokens import verify_unsubscribe_token

logger = logging.getLogger("investor_portal.service")


class CheckAllowlistRequest(BaseModel):
    email: str = ""


class CheckAllowlistResponse(BaseModel):
    approved: bool
    isExistingUser: bool


class OkResponse(BaseModel):
    ok: bool = True


class AllowlistEmailView(BaseModel):
    email: str
    subscribed: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AllowlistDomainView(BaseModel):
    id: str
    domain: str
    emails: List[AllowlistEmailView]


class AllowlistResponse(BaseModel):
    domains: List[AllowlistDomainView]


class ManageAllowlistRequest(BaseModel):
    type: Optional[Literal["email", "domain"]] = None
    value: str = ""


class ManageAllowlistResponse(BaseModel):
    success: bool
    message: str


class SendUpdateRequest(BaseModel):
    title: str = ""
    content_md: str = ""


class UpdateView(BaseModel):
    id: str
    title: str
    content_md: str
    created_at: datetime
    email_sent: bool
    sent_count: Optional[int] = None
    failed_count: Optional[int] = None


class UpdateListResponse(BaseModel):
    updates: List[UpdateView]


class SeedResponse(BaseModel):
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


def _update_to_view(update: UpdateDoc) -> UpdateView:
    return UpdateView(
        id=update.id,
        title=update.title,
        content_md=update.content_md,
        created_at=update.created_at,
        email_sent=update.email_sent,
        sent_count=update.sent_count,
        failed_count=update.failed_count,
    )


def _failures_payload(failures: Iterable[RecipientFailure], *, include_errors: bool) -> List[Dict[str, str]]:
    payload: List[Dict[str, str]] = []
    for failure in failures:
        entry = {"email": failure.email}
        if include_errors:
            entry["error"] = failure.error
        payload.append(entry)
    return payload


def _broadcast_payload(report: BroadcastReport, *, include_errors: bool) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ok": True,
        "updateId": report.update_id,
        "recipients": report.recipients,
        "sent": report.sent,
        "failed": report.failed,
    }
    if report.recipients == 0:
        payload["message"] = "Update published. No subscribed recipients."
    elif report.partial:
        payload["failedRecipients"] = _failures_payload(report.failed_recipients, include_errors=include_errors)
        payload["message"] = f"Update sent to {report.sent} recipients. {report.failed} failed."
    else:
        payload["message"] = f"Update sent successfully to {report.sent} recipients."
    return payload


def _build_verifier(settings: PortalSettings) -> JWTIdentityVerifier:
    if not settings.jwt_secret and not settings.jwks_url:
        raise ValueError("Configure PORTAL_JWT_SECRET or PORTAL_JWKS_URL to verify bearer tokens")
    return JWTIdentityVerifier(
        secret=settings.jwt_secret,
        jwks_url=settings.jwks_url,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )


def _build_mailer(settings: PortalSettings) -> Optional[ResendMailer]:
    if not settings.email_configured:
        logger.warning("Email configuration missing; broadcasts and welcome emails are disabled.")
        return None
    return ResendMailer(
        api_key=settings.resend_api_key or "",
        sender=settings.email_from or "",
        reply_to=settings.email_reply_to,
        base_url=settings.resend_base_url,
    )


def register_exception_handlers(app: FastAPI, settings: PortalSettings) -> None:
    """Render portal errors as ``{"error": ...}`` JSON bodies."""

    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
        body: Dict[str, Any] = {"error": exc.message}
        if isinstance(exc, RateLimitError):
            body = {
                "error": "Rate limit exceeded",
                "message": exc.message,
                "resetAt": exc.reset_at,
                "type": "RateLimit",
            }
        elif isinstance(exc, BroadcastFailedError):
            body = {
                "error": "Failed to send update",
                "type": exc.error_type,
                "message": exc.message,
                "sent": exc.sent,
                "failed": exc.failed,
                "failedRecipients": _failures_payload(exc.failures, include_errors=not settings.is_production),
            }
        elif isinstance(exc, UpstreamError):
            body["type"] = exc.error_type
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid request body."})

    @app.exception_handler(sqlite3.Error)
    async def store_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Store failure while handling %s %s", request.method, request.url.path, exc_info=exc)
        body: Dict[str, Any] = {"error": "Internal server error.", "type": "Server"}
        if not settings.is_production:
            body["details"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_api_routes(
    app: FastAPI,
    *,
    settings: PortalSettings,
    database: Database,
    policy: ApprovalPolicy,
    allowlist: AllowlistSynchronizer,
    orchestrator: BroadcastOrchestrator,
    limiter: RateLimiter,
    current_principal: BearerAuth,
    current_admin: AdminAuth,
    seed_auth: SharedSecretAuth,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/check-allowlist", response_model=CheckAllowlistResponse)
    async def check_allowlist(request: CheckAllowlistRequest) -> CheckAllowlistResponse:
        email = normalize_email(request.email)
        if not email or extract_domain(email) is None:
            raise ValidationError("Valid email required.")

        approved = await policy.is_approved(email)
        existing = await anyio.to_thread.run_sync(database.get_user_by_email, email)
        return CheckAllowlistResponse(approved=approved, isExistingUser=existing is not None)

    @app.post("/create-user", response_model=OkResponse)
    async def create_user(principal: Principal = Depends(current_principal)) -> OkResponse:
        profile = await allowlist.sync_on_login(principal.uid, principal.email)
        logger.info("Synced profile %s (approved=%s)", profile.uid, profile.approved)
        return OkResponse()

    @app.get("/updates", response_model=UpdateListResponse)
    async def list_updates(
        limit: int = Query(default=20, ge=1, le=100),
        principal: Principal = Depends(current_principal),
    ) -> UpdateListResponse:
        if not await policy.is_approved(principal.email):
            raise ForbiddenError("Not approved.")
        updates = await anyio.to_thread.run_sync(database.list_updates, limit)
        return UpdateListResponse(updates=[_update_to_view(update) for update in updates])

    @app.get("/get-allowlist", response_model=AllowlistResponse)
    async def get_allowlist(principal: Principal = Depends(current_admin)) -> AllowlistResponse:
        entries = await allowlist.list_allowlist()
        return AllowlistResponse(
            domains=[
                AllowlistDomainView(
                    id=entry.domain,
                    domain=entry.domain,
                    emails=[
                        AllowlistEmailView(
                            email=item.email,
                            subscribed=item.subscribed,
                            last_login=item.last_login,
                            created_at=item.created_at,
                        )
                        for item in entry.emails
                    ],
                )
                for entry in entries
            ]
        )

    @app.api_route("/manage-allowlist", methods=["POST", "DELETE"], response_model=ManageAllowlistResponse)
    async def manage_allowlist(
        request: Request,
        payload: ManageAllowlistRequest,
        principal: Principal = Depends(current_admin),
    ) -> ManageAllowlistResponse:
        value = payload.value.strip().lower()
        if payload.type is None or not value:
            raise ValidationError("Type and value required.")

        removing = request.method == "DELETE"
        if payload.type == "email":
            if removing:
                domain_deleted = await allowlist.remove_email(value)
                message = (
                    "Email removed. Domain deleted as it had no remaining emails."
                    if domain_deleted
                    else "Email removed."
                )
            else:
                await allowlist.add_email(value)
                message = "Email added and subscribed."
        else:
            if removing:
                await allowlist.remove_domain(value)
                message = "Domain removed."
            else:
                await allowlist.add_domain(value)
                message = "Domain added."

        logger.info("Admin %s: %s %s %s", principal.email, request.method, payload.type, value)
        return ManageAllowlistResponse(success=True, message=message)

    @app.post("/send-investor-update")
    async def send_investor_update(
        payload: SendUpdateRequest,
        principal: Principal = Depends(current_admin),
    ) -> JSONResponse:
        rate_limit = await limiter.check_policy(principal.uid, BROADCAST_RATE_LIMIT)
        if not rate_limit.allowed:
            logger.warning("Admin %s exceeded the broadcast rate limit", principal.email)
            raise RateLimitError(
                "Too many update requests. Please try again later.",
                reset_at=rate_limit.reset_at,
            )

        report = await orchestrator.send_update(payload.title, payload.content_md)
        status_code = status.HTTP_207_MULTI_STATUS if report.partial else status.HTTP_200_OK
        return JSONResponse(
            status_code=status_code,
            content=_broadcast_payload(report, include_errors=not settings.is_production),
        )

    @app.get("/unsubscribe", response_class=PlainTextResponse)
    async def unsubscribe(token: Optional[str] = None) -> PlainTextResponse:
        secret = settings.unsubscribe_secret
        if not token or not secret:
            return PlainTextResponse("Invalid unsubscribe request.", status_code=status.HTTP_400_BAD_REQUEST)

        email = verify_unsubscribe_token(token, secret)
        if email is None:
            return PlainTextResponse(
                "Invalid or expired unsubscribe token.",
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        updated = await anyio.to_thread.run_sync(partial(database.update_user_flags, email, subscribed=False))
        if not updated:
            logger.info("Unsubscribe for %s matched no profile", email)
        return PlainTextResponse("You have been unsubscribed from investor updates.")

    @app.post("/seed-db", response_model=SeedResponse, dependencies=[Depends(seed_auth)])
    async def seed_db() -> SeedResponse:
        admin_email = (settings.seed_admin_email or "").strip().lower()
        if not admin_email or extract_domain(admin_email) is None:
            raise ValidationError("Missing PORTAL_SEED_ADMIN_EMAIL setting.")

        summary = await anyio.to_thread.run_sync(seed_database, database, [admin_email])
        return SeedResponse(
            success=True,
            message="Database seeded successfully (idempotent - duplicates skipped)",
            data={"adminEmail": admin_email, **summary.as_dict()},
        )


def create_app(
    *,
    settings: PortalSettings | None = None,
    database: Database | None = None,
    verifier: JWTIdentityVerifier | None = None,
    mailer: Mailer | None = None,
    dispatcher: BackgroundDispatcher | None = None,
    limiter: RateLimiter | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application and its collaborators."""

    config = settings or PortalSettings.from_env()
    db = database or Database(resolve_database_path(config.database_path))
    db.initialize()

    identity = verifier or _build_verifier(config)
    outbound = mailer if mailer is not None else _build_mailer(config)
    tasks = dispatcher or BackgroundDispatcher()
    rate_limiter = limiter or RateLimiter(db)
    janitor = RateLimitJanitor(rate_limiter, interval=config.rate_limit_cleanup_interval)

    async def send_welcome(email: str) -> None:
        if outbound is None:
            logger.warning("Email configuration missing. Skipping welcome email to %s.", email)
            return
        await outbound.send(render_welcome_email(email, site_url=config.site_url, reply_to=config.email_reply_to))

    policy = ApprovalPolicy(db)
    allowlist = AllowlistSynchronizer(db, policy, dispatcher=tasks, welcome_notifier=send_welcome)
    orchestrator = BroadcastOrchestrator(
        db,
        outbound,
        BroadcastSettings(
            site_url=config.site_url,
            api_url=config.public_api_url,
            subject_prefix=config.email_subject_prefix,
            unsubscribe_secret=config.unsubscribe_secret,
            reply_to=config.email_reply_to,
        ),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        janitor.start()
        try:
            yield
        finally:
            await janitor.stop()
            await tasks.drain()
            close = getattr(outbound, "aclose", None)
            if close is not None:
                await close()

    app = FastAPI(
        title="Investor Portal API",
        version="0.1.0",
        description="Allowlist-gated investor updates and broadcast email.",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.database = db
    app.state.dispatcher = tasks
    app.state.rate_limiter = rate_limiter

    bearer = BearerAuth(identity)
    register_exception_handlers(app, config)
    register_api_routes(
        app,
        settings=config,
        database=db,
        policy=policy,
        allowlist=allowlist,
        orchestrator=orchestrator,
        limiter=rate_limiter,
        current_principal=bearer,
        current_admin=AdminAuth(bearer, db),
        seed_auth=SharedSecretAuth(config.seed_secret),
    )
    return app


__all__ = ["create_app", "register_api_routes", "register_exception_handlers"]
