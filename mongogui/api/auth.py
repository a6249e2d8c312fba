"""Authentication API endpoints."""

import logging
import time
from collections import defaultdict
from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from mongogui.core.config import settings
from mongogui.core.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    SessionError,
    ValidationError,
)
from mongogui.core.request_utils import get_client_ip, get_user_agent
from mongogui.middleware.auth import get_session_id
from mongogui.schemas.auth import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    SessionInfo,
    SessionResponse,
    TokenResponse,
)
from mongogui.services.auth import AuthService
from mongogui.services.manager import RequestInfo, ServiceManager, get_service_manager

logger = logging.getLogger(__name__)

# Failed login attempts per client IP (monotonic timestamps)
_login_attempts: dict[str, list[float]] = defaultdict(list)


def _check_login_rate_limit(client_ip: str) -> None:
    """Check if a client IP has exceeded the login attempt rate limit."""
    now = time.monotonic()
    window = settings.login_rate_limit_window_seconds
    attempts = _login_attempts[client_ip]
    _login_attempts[client_ip] = [t for t in attempts if now - t < window]
    if len(_login_attempts[client_ip]) >= settings.login_rate_limit_attempts:
        logger.warning("Login rate limit exceeded for %s", client_ip)
        raise AuthenticationError(
            "Too many login attempts. Please try again later.",
            code="RATE_LIMITED",
            status_code=429,
        )


def _record_login_attempt(client_ip: str) -> None:
    """Record a failed login attempt for rate limiting."""
    _login_attempts[client_ip].append(time.monotonic())


def reset_login_attempts() -> None:
    _login_attempts.clear()


router = APIRouter(prefix="/auth", tags=["auth"])


def get_current_user(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> dict[str, Any]:
    """Dependency to get the current subject from the bearer token."""
    token = AuthService.extract_token_from_header(request.headers.get("Authorization"))
    if not token:
        raise AuthenticationError("Access token is required", code="MISSING_TOKEN")

    claims = manager.validate_access_token(token)
    request.state.access_token = token
    return {
        "subject_id": claims["sub"],
        "username": claims.get("username", claims["sub"]),
        "token_iat": claims.get("iat"),
    }


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    manager: ServiceManager = Depends(get_service_manager),
) -> LoginResponse:
    """Authenticate, validate the connection string and open a session.

    Rate limited per client IP after repeated failures.
    """
    client_ip = get_client_ip(request) or "unknown"
    _check_login_rate_limit(client_ip)

    result = await manager.authenticate_user(
        body.model_dump(),
        RequestInfo(ip_address=get_client_ip(request), user_agent=get_user_agent(request)),
    )

    if not result.success or result.tokens is None or result.session is None:
        _record_login_attempt(client_ip)
        message = result.error_message or "Authentication failed"
        if result.error_code == "INVALID_CONNECTION_STRING":
            raise ValidationError(message, code=result.error_code, details=result.details)
        if result.error_code == "INVALID_CREDENTIALS":
            raise InvalidCredentialsError(message)
        raise AuthenticationError(message, code=result.error_code, details=result.details)

    response.set_cookie(
        key=manager.settings.session_cookie_name,
        value=result.session.session_id,
        max_age=result.session.max_age,
        httponly=True,
        secure=manager.settings.is_production,
        samesite="strict",
    )

    return LoginResponse(
        tokens=TokenResponse(**result.tokens.to_dict()),
        session=SessionInfo(
            session_id=result.session.session_id,
            expires_at=result.session.expires_at,
            max_age=result.session.max_age,
        ),
        connection_metadata=result.connection_metadata,
        warnings=result.warnings,
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    body: RefreshRequest,
    manager: ServiceManager = Depends(get_service_manager),
) -> TokenResponse:
    """Exchange a refresh token for a new pair (the old one is consumed)."""
    tokens = manager.refresh_tokens(body.refresh_token)
    return TokenResponse(**tokens.to_dict())


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    response: Response,
    body: LogoutRequest | None = None,
    current_user: dict[str, Any] = Depends(get_current_user),
    manager: ServiceManager = Depends(get_service_manager),
) -> LogoutResponse:
    """Revoke the current access token and end every session of the subject."""
    result = manager.logout_user(current_user["subject_id"], request.state.access_token)
    if body is not None and body.refresh_token:
        manager.auth_service.blacklist_token(body.refresh_token)

    response.delete_cookie(manager.settings.session_cookie_name)
    logger.info(f"User logged out: {current_user['username']}")
    return LogoutResponse(**result.to_dict())


@router.get("/session", response_model=SessionResponse)
async def get_current_session(
    request: Request,
    response: Response,
    current_user: dict[str, Any] = Depends(get_current_user),
    manager: ServiceManager = Depends(get_service_manager),
) -> SessionResponse:
    """Return the caller's session, validated against this request."""
    session_id = get_session_id(request, manager)
    if not session_id:
        raise SessionError("Session ID is required", code="MISSING_SESSION")

    validation = manager.validate_session(
        session_id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    data = validation.data
    if data.get("subject_id") != current_user["subject_id"]:
        logger.warning(f"Session {session_id} presented by another subject")
        raise SessionError(
            "Session does not belong to the current user",
            code="SESSION_SECURITY_VIOLATION",
        )

    if validation.warnings:
        response.headers["X-Session-Warnings"] = ", ".join(validation.warnings)
    if validation.requires_reauth:
        response.headers["X-Session-Reauth-Required"] = "true"

    metadata = data["session_metadata"]
    return SessionResponse(
        session_id=session_id,
        subject_id=data["subject_id"],
        username=data.get("username"),
        connection_metadata=data.get("connection_metadata"),
        created_at=metadata["created_at"],
        last_accessed_at=metadata["last_accessed_at"],
        expires_at=metadata["expires_at"],
        warnings=validation.warnings,
        suspicious_activity=validation.suspicious_activity,
        requires_reauth=validation.requires_reauth,
    )
