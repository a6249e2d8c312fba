"""Pydantic schemas for API request/response validation."""

from mongogui.schemas.auth import (
    ConnectionValidateRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    SessionInfo,
    SessionResponse,
    TokenResponse,
)

__all__ = [
    "ConnectionValidateRequest",
    "LoginRequest",
    "LoginResponse",
    "LogoutRequest",
    "LogoutResponse",
    "RefreshRequest",
    "SessionInfo",
    "SessionResponse",
    "TokenResponse",
]
