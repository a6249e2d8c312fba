"""Pydantic schemas for authentication API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Request for login, optionally opening a MongoDB connection."""

    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)
    connection_string: str | None = Field(
        None,
        description="MongoDB connection string; validated and stored encrypted in the session",
    )


class TokenResponse(BaseModel):
    """Response with JWT tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(description="Access token expiry in seconds")


class SessionInfo(BaseModel):
    session_id: str
    expires_at: datetime
    max_age: int = Field(description="Session lifetime in seconds")


class LoginResponse(BaseModel):
    success: bool = True
    tokens: TokenResponse
    session: SessionInfo
    connection_metadata: dict[str, Any] | None = None
    warnings: list[str] = Field(default_factory=list)


class RefreshRequest(BaseModel):
    """Request for token refresh."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Request for logout with optional refresh token revocation."""

    refresh_token: str | None = Field(
        None,
        description="Refresh token to revoke in addition to the access token",
    )


class LogoutResponse(BaseModel):
    success: bool
    token_blacklisted: bool
    tokens_invalidated: int
    sessions_destroyed: int
    errors: list[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    """Current session as seen by its owner."""

    session_id: str
    subject_id: str
    username: str | None = None
    connection_metadata: dict[str, Any] | None = None
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    warnings: list[str] = Field(default_factory=list)
    suspicious_activity: bool = False
    requires_reauth: bool = False


class ConnectionValidateRequest(BaseModel):
    connection_string: str
