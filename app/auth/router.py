import logging

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from app.auth.utils import (
    create_user,
    get_client_ip,
    get_user_agent,
    get_user_row,
    identity_from_row,
    validate_password,
    validate_username,
    verify_password,
)
from app.config import settings
from app.db import get_connection
from app.errors import AuthenticationError, AuthorizationError, RateLimitError, ValidationError
from app.models import Identity
from app.security.audit import AuditEntry
from app.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    username: str
    password: str
    confirm_password: str | None = None


class LoginRequest(BaseModel):
    username: str
    password: str
    mfa_code: str | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_token(request: Request) -> str | None:
    token = request.cookies.get(settings.cookie_name)
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


def _is_banned(user_id: int) -> bool | None:
    with get_connection() as conn:
        row = conn.execute("SELECT is_banned FROM users WHERE id = ?", (user_id,)).fetchone()
    return None if row is None else bool(row["is_banned"])


def get_current_user(request: Request, services: Services = Depends(get_services)) -> Identity:
    identity = services.authority.verify(get_token(request))
    if identity is None:
        raise AuthenticationError("Authentication required")
    banned = _is_banned(identity.id)
    if banned is None:
        raise AuthenticationError("Authentication required")
    if banned or identity.is_banned:
        raise AuthorizationError("Account is banned")
    return identity


def require_admin(user: Identity = Depends(get_current_user)) -> Identity:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


@router.post("/register")
async def register(body: RegisterRequest, request: Request, services: Services = Depends(get_services)):
    username = body.username.strip()
    validate_username(username)
    validate_password(body.password)
    if body.confirm_password is not None and body.confirm_password != body.password:
        raise ValidationError("Passwords do not match", field="confirm_password")

    identity = create_user(username, body.password)
    logger.info(f"Registered user {identity.username} ({identity.id})")
    services.audit.record(AuditEntry(
        user_id=identity.id,
        event_type="user_registered",
        event_category="authentication",
        severity="info",
        source_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
        resource="/auth/register",
        details={"username": identity.username},
    ))
    return {"success": True, "user": identity.public()}


def _failed_login(services: Services, request: Request, username: str, reason: str, user_id=None):
    services.audit.record(AuditEntry(
        user_id=user_id,
        event_type="failed_login",
        event_category="authentication",
        severity="medium",
        source_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
        resource="/auth/login",
        details={"username": username, "reason": reason},
        success=False,
        error_message=reason,
    ))


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
):
    ip = get_client_ip(request)
    if not services.login_limiter.is_allowed(ip):
        retry_after = services.login_limiter.retry_after_seconds(ip)
        services.audit.record(AuditEntry(
            event_type="login_rate_limited",
            event_category="authentication",
            severity="medium",
            source_ip=ip,
            user_agent=get_user_agent(request),
            resource="/auth/login",
            details={"username": body.username, "retry_after": retry_after},
            success=False,
        ))
        raise RateLimitError("Too many login attempts. Please try again later.", retry_after)

    row = get_user_row(body.username.strip())
    if not row or not verify_password(body.password, row["password_hash"]):
        _failed_login(services, request, body.username, "invalid_credentials")
        raise AuthenticationError("Invalid username or password")

    identity = identity_from_row(row)
    if identity.is_banned:
        _failed_login(services, request, body.username, "account_banned", identity.id)
        raise AuthenticationError("Account is banned")

    mfa_method = None
    if services.mfa.is_enabled(identity.id):
        if not body.mfa_code:
            _failed_login(services, request, body.username, "mfa_required", identity.id)
            raise AuthenticationError("MFA code required", mfa_required=True)
        mfa_method = services.mfa.check_code(identity.id, body.mfa_code)
        if mfa_method is None:
            _failed_login(services, request, body.username, "invalid_mfa_code", identity.id)
            raise AuthenticationError("Invalid MFA code", mfa_required=True)

    token = services.authority.issue(identity)
    services.audit.record(AuditEntry(
        user_id=identity.id,
        event_type="login_success",
        event_category="authentication",
        severity="info",
        source_ip=ip,
        user_agent=get_user_agent(request),
        resource="/auth/login",
        details={"username": identity.username, "mfa_method": mfa_method},
    ))
    logger.info(f"User {identity.username} logged in from {ip}")

    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.jwt_expire_minutes * 60,
    )
    return {"success": True, "user": identity.public(), "token": token}


@router.post("/logout")
async def logout(request: Request, response: Response, services: Services = Depends(get_services)):
    token = get_token(request)
    identity = services.authority.verify(token)
    if identity is not None:
        services.authority.revoke(token)
        services.audit.record(AuditEntry(
            user_id=identity.id,
            event_type="logout",
            event_category="authentication",
            severity="info",
            source_ip=get_client_ip(request),
            user_agent=get_user_agent(request),
            resource="/auth/logout",
        ))
    response.delete_cookie(settings.cookie_name)
    return {"success": True}


@router.get("/me")
async def me(user: Identity = Depends(get_current_user)):
    return {"success": True, "user": user.public()}
