"""Bearer-token and session middleware for protected API paths.

Both middlewares answer failures with the standard error envelope
({"success": false, "error": {code, message, timestamp}}) instead of
calling the route.
"""

import logging
from collections.abc import Callable, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from mongogui.core.errors import (
    InvalidTokenError,
    SessionError,
    TokenExpiredError,
    error_envelope,
)
from mongogui.core.request_utils import get_client_ip, get_user_agent
from mongogui.services.auth import AuthService
from mongogui.services.manager import ServiceManager, get_service_manager

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PREFIXES = ("/api",)
SESSION_WARNINGS_HEADER = "X-Session-Warnings"
SESSION_REAUTH_HEADER = "X-Session-Reauth-Required"


def error_response(
    code: str,
    message: str,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(code, message),
        headers=headers,
    )


def _matches(path: str, prefixes: Sequence[str]) -> bool:
    """Exact or segment-boundary prefix match."""
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)


def get_session_id(request: Request, manager: ServiceManager) -> str | None:
    """Session id from the session header, falling back to the session cookie."""
    session_id = request.headers.get(manager.settings.session_header_name)
    if not session_id:
        session_id = request.cookies.get(manager.settings.session_cookie_name)
    return session_id.strip() if session_id and session_id.strip() else None


class _ProtectedPathMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        protected_prefixes: Sequence[str] = DEFAULT_PROTECTED_PREFIXES,
        excluded_paths: Sequence[str] = (),
        manager_factory: Callable[[], ServiceManager] = get_service_manager,
    ):
        super().__init__(app)
        self.protected_prefixes = tuple(protected_prefixes)
        self.excluded_paths = tuple(excluded_paths)
        # Resolved per request so the singleton can be swapped (e.g. in tests)
        self.manager_factory = manager_factory

    def is_protected(self, request: Request) -> bool:
        # CORS preflight is handled by CORSMiddleware
        if request.method == "OPTIONS":
            return False
        path = request.url.path
        if _matches(path, self.excluded_paths):
            return False
        return _matches(path, self.protected_prefixes)


class TokenAuthMiddleware(_ProtectedPathMiddleware):
    """Require `Authorization: Bearer <access token>` on protected paths.

    On success `request.state.user` holds `{subject_id, username, token_iat}`
    and `request.state.access_token` the raw token.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.is_protected(request):
            return await call_next(request)

        path = request.url.path
        token = AuthService.extract_token_from_header(request.headers.get("Authorization"))
        if not token:
            logger.warning(f"API request without token: {request.method} {path}")
            return error_response(
                "MISSING_TOKEN",
                "Access token is required",
                401,
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            claims = self.manager_factory().validate_access_token(token)
        except TokenExpiredError:
            logger.debug(f"Expired token for: {request.method} {path}")
            return error_response(
                "TOKEN_EXPIRED",
                "Access token has expired",
                401,
                headers={"WWW-Authenticate": "Bearer"},
            )
        except InvalidTokenError as e:
            logger.warning(f"Invalid token for: {request.method} {path} - {e.message}")
            return error_response("INVALID_TOKEN", "Invalid or expired access token", 403)

        request.state.user = {
            "subject_id": claims["sub"],
            "username": claims.get("username", claims["sub"]),
            "token_iat": claims.get("iat"),
        }
        request.state.access_token = token
        return await call_next(request)


class SessionAuthMiddleware(_ProtectedPathMiddleware):
    """Validate the session named by the session header or cookie.

    With `require_session=False` requests without a session id pass through
    untouched; a session id that is present is always validated. Non-fatal
    security warnings are returned in the X-Session-Warnings header, and a
    session flagged for re-authentication is marked with
    X-Session-Reauth-Required. Neither ends the session.
    """

    def __init__(
        self,
        app: ASGIApp,
        protected_prefixes: Sequence[str] = DEFAULT_PROTECTED_PREFIXES,
        excluded_paths: Sequence[str] = (),
        manager_factory: Callable[[], ServiceManager] = get_service_manager,
        require_session: bool = True,
    ):
        super().__init__(app, protected_prefixes, excluded_paths, manager_factory)
        self.require_session = require_session

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.is_protected(request):
            return await call_next(request)

        manager = self.manager_factory()
        session_id = get_session_id(request, manager)
        if not session_id:
            if not self.require_session:
                return await call_next(request)
            return error_response("MISSING_SESSION", "Session ID is required", 401)

        try:
            validation = manager.validate_session(
                session_id,
                ip_address=get_client_ip(request),
                user_agent=get_user_agent(request),
            )
        except SessionError as e:
            logger.warning(f"Session rejected ({e.code}) for: {request.method} {request.url.path}")
            return error_response(e.code, e.message, e.status_code)

        request.state.session = validation.data
        request.state.session_id = session_id

        response = await call_next(request)
        if validation.warnings:
            response.headers[SESSION_WARNINGS_HEADER] = ", ".join(validation.warnings)
        if validation.requires_reauth:
            response.headers[SESSION_REAUTH_HEADER] = "true"
        return response
