"""mongogui configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Placeholder values shipped in example .env files; refused in production
PLACEHOLDER_SECRETS = {
    "your-super-secure-jwt-secret-key-change-this-in-production",
    "your-super-secure-session-secret-key-change-this-in-production",
}

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings.

    Secrets have no defaults: JWT_SECRET and SESSION_SECRET must be provided
    through the environment (or a .env file) and be at least 32 characters.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Application ---
    app_name: str = "mongogui"
    app_version: str = "0.1.0"
    environment: Literal["development", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # --- Secrets ---
    jwt_secret: str = Field(..., description="HMAC key used to sign access/refresh tokens")
    session_secret: str = Field(..., description="Secret used to derive session/connection keys")

    # --- Tokens ---
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "mongodb-gui"
    jwt_audience: str = "mongodb-gui-client"
    jwt_access_token_expire_minutes: int = Field(default=15, ge=1)
    jwt_refresh_token_expire_days: int = Field(default=7, ge=1)

    # --- Sessions ---
    session_max_age_seconds: int = Field(default=86400, ge=300)
    session_idle_warning_seconds: int = Field(default=3600, ge=60)
    # Hex-encoded salt for the session key. Empty means a random salt per
    # process, which invalidates every stored session on restart.
    session_key_salt: str = ""
    session_cookie_name: str = "sessionId"
    session_header_name: str = "X-Session-ID"

    # --- MongoDB connection defaults ---
    mongodb_max_pool_size: int = Field(default=10, ge=1, le=100)
    mongodb_min_pool_size: int = Field(default=5, ge=0, le=100)
    mongodb_max_idle_time_ms: int = Field(default=30000, ge=1000)
    mongodb_server_selection_timeout_ms: int = Field(default=10000, ge=1000)

    # --- Background cleanup ---
    token_cleanup_interval_seconds: int = Field(default=1800, ge=1)
    session_cleanup_interval_seconds: int = Field(default=900, ge=1)

    # --- HTTP ---
    cors_origins: str = "http://localhost:3000"
    hsts_max_age: int = Field(default=31536000, ge=0)
    login_rate_limit_attempts: int = Field(default=5, ge=1)
    login_rate_limit_window_seconds: int = Field(default=900, ge=1)

    # --- Demo credential check (not for production use) ---
    demo_username: str = "admin"
    demo_password: str = "admin"

    @field_validator("jwt_secret", "session_secret")
    @classmethod
    def validate_secret_length(cls, v: str) -> str:
        if len(v) < MIN_SECRET_LENGTH:
            raise ValueError(f"Secret must be at least {MIN_SECRET_LENGTH} characters long")
        return v

    @field_validator("session_key_salt")
    @classmethod
    def validate_session_key_salt(cls, v: str) -> str:
        if not v:
            return v
        try:
            salt = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError(f"SESSION_KEY_SALT must be valid hexadecimal: {e}") from e
        if len(salt) < 16:
            raise ValueError("SESSION_KEY_SALT must decode to at least 16 bytes")
        return v

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        if self.environment != "production":
            return self
        if self.jwt_secret in PLACEHOLDER_SECRETS:
            raise ValueError("JWT_SECRET must be changed from its default value in production")
        if self.session_secret in PLACEHOLDER_SECRETS:
            raise ValueError("SESSION_SECRET must be changed from its default value in production")
        if "*" in self.cors_origins_list:
            raise ValueError("Wildcard CORS origin (*) is not allowed in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def session_key_salt_bytes(self) -> bytes | None:
        return bytes.fromhex(self.session_key_salt) if self.session_key_salt else None

    def check_security_configuration(self) -> list[str]:
        """Return warnings about insecure but allowed configuration."""
        warnings = []
        if not self.session_key_salt:
            warnings.append(
                "SESSION_KEY_SALT is not set; sessions will not survive a process restart"
            )
        if self.demo_username == "admin" and self.demo_password == "admin":
            warnings.append("Demo credentials admin/admin are enabled")
        if self.jwt_secret == self.session_secret:
            warnings.append("JWT_SECRET and SESSION_SECRET should be different values")
        if self.debug and self.is_production:
            warnings.append("DEBUG is enabled in production; error details will be exposed")
        return warnings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


settings = get_settings()
