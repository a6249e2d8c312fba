"""Middleware module for mongogui."""

from mongogui.middleware.auth import SessionAuthMiddleware, TokenAuthMiddleware
from mongogui.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
    "SessionAuthMiddleware",
    "TokenAuthMiddleware",
]
