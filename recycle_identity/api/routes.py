"""HTTP route definitions for the identity service."""

from __future__ import annotations

import hashlib
import logging

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from pydantic import BaseModel, EmailStr
import redis

from ..config import Settings, get_settings
from ..domain.contracts import RegisterAccountInput
from ..domain.errors import (
    INVALID_EMAIL,
    INVALID_TOKEN,
    LOCKED_OUT,
    LOGIN_FAILED,
    InvalidTokenError,
    LockedOutError,
    LoginFailedError,
    ValidationError,
)
from ..domain.service import AccountService
from ..domain.sessions import SessionPrincipal
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")

VALIDATION_TITLE = "One or more validation errors occurred."

REGISTRATIONS = Counter("identity_registrations_total", "Accounts registered")
LOGIN_ATTEMPTS = Counter("identity_login_attempts_total", "Login attempts by outcome", ["outcome"])
TOKEN_VALIDATIONS = Counter(
    "identity_token_validations_total", "Email confirmation attempts by outcome", ["outcome"]
)


class RegisterRequest(BaseModel):
    """Payload accepted when registering a new account."""

    username: str
    email: EmailStr
    password: str


class RegisterResponse(BaseModel):
    """Registration result carrying the token for out-of-band delivery."""

    account_id: str
    confirmation_token: str


class LoginRequest(BaseModel):
    """JSON body used to open a session."""

    email: str
    password: str


class ValidateTokenRequest(BaseModel):
    """Request body proving ownership of an email address."""

    email: str
    token: str


class PrincipalResponse(BaseModel):
    """Serialised representation of the authenticated `SessionPrincipal`."""

    account_id: str
    username: str
    email: str
    email_confirmed: bool
    session_expires_at: datetime

    @classmethod
    def from_principal(cls, principal: SessionPrincipal) -> "PrincipalResponse":
        return cls(
            account_id=principal.account_id,
            username=principal.username,
            email=principal.email,
            email_confirmed=principal.email_confirmed,
            session_expires_at=principal.expires_at,
        )


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def build_rate_limiter(config: Settings) -> RateLimiter:
    """Pick the limiter backend from settings; an unreachable Redis falls back to memory."""
    if config.rate_limit_backend == "redis" and config.redis_url:
        client = redis.from_url(config.redis_url)
        try:
            client.ping()
        except redis.RedisError as exc:
            logger.warning("redis rate limiter unavailable, using in-memory backend: %s", exc)
        else:
            logger.info("rate limiter backed by redis")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=config.rate_limit_requests,
                window_seconds=config.rate_limit_window_seconds,
            )
    return SlidingWindowRateLimiter(
        max_requests=config.rate_limit_requests,
        window_seconds=config.rate_limit_window_seconds,
    )


rate_limiter = build_rate_limiter(settings)


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_principal(
    request: Request, service: AccountService = Depends(get_service)
) -> SessionPrincipal:
    """Resolve the session cookie to a principal or reject the request with 401."""
    principal = service.resolve_session(request.cookies.get(settings.session_cookie_name))
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return principal


def _enforce_rate_limit(request: Request, action: str, subject: str) -> None:
    client = request.client.host if request.client else "unknown"
    digest = hashlib.sha256(subject.strip().lower().encode("utf-8")).hexdigest()[:12]
    decision = rate_limiter.check(f"{action}:{client}:{digest}")
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers={"Retry-After": str(decision.retry_after)},
        )


def _validation_problem(errors: dict[str, list[str]]) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"title": VALIDATION_TITLE, "errors": errors},
    )


@router.post("/register", response_model=RegisterResponse)
def register(
    request: Request,
    payload: RegisterRequest,
    service: AccountService = Depends(get_service),
) -> RegisterResponse:
    """Create an unconfirmed account and return its confirmation token."""
    _enforce_rate_limit(request, "register", payload.email)
    try:
        registration = service.register(
            RegisterAccountInput(
                username=payload.username,
                email=payload.email,
                password=payload.password,
            )
        )
    except ValidationError as exc:
        raise _validation_problem(exc.errors) from exc
    REGISTRATIONS.inc()
    return RegisterResponse(
        account_id=registration.account.account_id,
        confirmation_token=registration.confirmation_token,
    )


@router.post("/login", status_code=status.HTTP_204_NO_CONTENT)
def login(
    request: Request,
    payload: LoginRequest,
    service: AccountService = Depends(get_service),
) -> Response:
    """Verify credentials and set the session cookie."""
    _enforce_rate_limit(request, "login", payload.email)
    try:
        issued = service.login(payload.email, payload.password)
    except LockedOutError as exc:
        LOGIN_ATTEMPTS.labels(outcome="locked_out").inc()
        code = LOCKED_OUT if settings.lockout_exposed else LOGIN_FAILED
        raise _validation_problem({"": [code]}) from exc
    except LoginFailedError as exc:
        LOGIN_ATTEMPTS.labels(outcome="failed").inc()
        raise _validation_problem({"": [LOGIN_FAILED]}) from exc
    LOGIN_ATTEMPTS.labels(outcome="succeeded").inc()

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.set_cookie(
        settings.session_cookie_name,
        issued.token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="strict",
        max_age=settings.session_ttl_seconds,
        path="/",
    )
    return response


@router.post("/validate-token", status_code=status.HTTP_204_NO_CONTENT)
def validate_token(
    request: Request,
    payload: ValidateTokenRequest,
    service: AccountService = Depends(get_service),
) -> Response:
    """Confirm email ownership with a previously issued token."""
    _enforce_rate_limit(request, "validate-token", payload.email)
    try:
        service.confirm_email(payload.email, payload.token)
    except InvalidTokenError as exc:
        TOKEN_VALIDATIONS.labels(outcome="invalid").inc()
        raise _validation_problem({"token": [INVALID_TOKEN]}) from exc
    TOKEN_VALIDATIONS.labels(outcome="confirmed").inc()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    principal: SessionPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_service),
) -> Response:
    """Revoke the current session and clear its cookie."""
    service.logout(principal)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response


@router.get("/me", response_model=PrincipalResponse)
def me(principal: SessionPrincipal = Depends(get_principal)) -> PrincipalResponse:
    """Return the authenticated principal."""
    return PrincipalResponse.from_principal(principal)


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_me(
    principal: SessionPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_service),
) -> Response:
    """Logically delete the authenticated account and end all of its sessions."""
    service.delete_account(principal)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response


@router.get("/audit", response_model=AuditLogResponse)
def list_audit_logs(
    event_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: SessionPrincipal = Depends(get_principal),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events for the authenticated account."""
    try:
        records, next_cursor = service.list_audit_events(
            principal,
            event_type=event_type,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed bodies as 400 with field-scoped codes instead of FastAPI's 422."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = loc[0] if loc else ""
        message = INVALID_EMAIL if field == "email" else str(error.get("msg", "invalid"))
        errors.setdefault(field, [])
        if message not in errors[field]:
            errors[field].append(message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"title": VALIDATION_TITLE, "errors": errors}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
