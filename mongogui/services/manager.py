"""Service manager: composes the auth, session and connection services.

The HTTP layer talks only to ServiceManager. It owns the login and logout
flows and the periodic cleanup tasks.
"""

import asyncio
import secrets
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from mongogui.core.config import Settings, get_settings
from mongogui.core.errors import DecryptionError, ServiceError, SessionError
from mongogui.core.logging import get_logger
from mongogui.core.scheduler import PeriodicTask
from mongogui.core.store import utcnow
from mongogui.services.auth import AuthService, TokenPair, verify_password
from mongogui.services.connection import ConnectionService
from mongogui.services.session import SessionHandle, SessionService

logger = get_logger("manager")


class CredentialVerifier(Protocol):
    async def verify(self, username: str, password: str) -> bool: ...


class DemoCredentialVerifier:
    """Accepts a single username/password pair taken from settings.

    This is a placeholder for a real user store and is not suitable for
    production use.
    """

    def __init__(self, username: str, password: str):
        self._username = username.encode("utf-8")
        self._password = password.encode("utf-8")

    async def verify(self, username: str, password: str) -> bool:
        # Compare both halves so timing does not reveal which one was wrong
        user_ok = secrets.compare_digest(username.encode("utf-8"), self._username)
        password_ok = secrets.compare_digest(password.encode("utf-8"), self._password)
        return user_ok and password_ok


class PasswordHashCredentialVerifier:
    """Verifies against a username -> Argon2 hash mapping."""

    def __init__(self, password_hashes: Mapping[str, str]):
        self._hashes = dict(password_hashes)

    async def verify(self, username: str, password: str) -> bool:
        password_hash = self._hashes.get(username)
        if password_hash is None:
            return False
        # Argon2 verification is CPU/memory heavy; keep it off the event loop
        return await asyncio.to_thread(verify_password, password, password_hash)


@dataclass
class RequestInfo:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuthResult:
    success: bool
    tokens: TokenPair | None = None
    session: SessionHandle | None = None
    connection_metadata: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    details: Any = None

    @classmethod
    def failure(cls, code: str, message: str, details: Any = None) -> "AuthResult":
        return cls(success=False, error_code=code, error_message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            data: dict[str, Any] = {
                "success": False,
                "error": {"code": self.error_code, "message": self.error_message},
            }
            if self.details is not None:
                data["details"] = self.details
            return data

        data = {
            "success": True,
            "tokens": self.tokens.to_dict() if self.tokens else None,
            "session": self.session.to_dict() if self.session else None,
            "connection_metadata": self.connection_metadata,
        }
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class LogoutResult:
    token_blacklisted: bool = False
    tokens_invalidated: int = 0
    sessions_destroyed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "token_blacklisted": self.token_blacklisted,
            "tokens_invalidated": self.tokens_invalidated,
            "sessions_destroyed": self.sessions_destroyed,
            "errors": list(self.errors),
        }


@dataclass
class SessionValidation:
    session_id: str
    data: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    suspicious_activity: bool = False
    requires_reauth: bool = False


class ServiceManager:
    """Orchestration root for the security services."""

    _instance: Optional["ServiceManager"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        auth_service: AuthService | None = None,
        session_service: SessionService | None = None,
        connection_service: ConnectionService | None = None,
        credential_verifier: CredentialVerifier | None = None,
    ):
        self.settings = settings or get_settings()
        self.auth_service = auth_service or AuthService(self.settings)
        self.session_service = session_service or SessionService(self.settings)
        self.connection_service = connection_service or ConnectionService(self.settings)
        self.credential_verifier: CredentialVerifier = (
            credential_verifier
            or DemoCredentialVerifier(self.settings.demo_username, self.settings.demo_password)
        )

        self._tasks = [
            PeriodicTask(
                "token-cleanup",
                self.settings.token_cleanup_interval_seconds,
                self.auth_service.cleanup_expired_tokens,
            ),
            PeriodicTask(
                "session-cleanup",
                self.settings.session_cleanup_interval_seconds,
                self.session_service.cleanup_expired_sessions,
            ),
        ]

    @classmethod
    def get_instance(cls) -> "ServiceManager":
        """Get singleton instance of the service manager (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._instance_lock:
            cls._instance = None

    # --- background tasks ---

    @property
    def background_tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def start_background_tasks(self) -> None:
        for task in self._tasks:
            task.start()

    async def stop_background_tasks(self) -> None:
        for task in self._tasks:
            await task.stop()

    # --- login / logout ---

    async def authenticate_user(
        self,
        credentials: Mapping[str, Any],
        request_info: RequestInfo | None = None,
    ) -> AuthResult:
        """Verify credentials, validate the connection string and open a session.

        Args:
            credentials: Mapping with `username`, `password` and an optional
                `connection_string`
            request_info: Client IP and user agent the session is bound to

        Returns:
            AuthResult; failures are returned, not raised
        """
        request_info = request_info or RequestInfo()
        username = credentials.get("username")
        password = credentials.get("password")

        if not isinstance(username, str) or not username or not isinstance(password, str):
            return AuthResult.failure("INVALID_CREDENTIALS", "Username and password are required")

        if not await self.credential_verifier.verify(username, password):
            logger.warning(f"Failed login for {username} from {request_info.ip_address}")
            return AuthResult.failure("INVALID_CREDENTIALS", "Invalid credentials")

        encrypted_connection = None
        connection_metadata = None
        warnings: list[str] = []
        connection_string = credentials.get("connection_string")
        if connection_string:
            validation = self.connection_service.validate_connection_string(connection_string)
            if not validation.valid or validation.sanitized is None:
                return AuthResult.failure(
                    "INVALID_CONNECTION_STRING",
                    "Invalid connection string",
                    details=validation.errors,
                )
            encrypted_connection = self.connection_service.encrypt_connection_string(
                validation.sanitized
            )
            connection_metadata = validation.metadata
            warnings = validation.warnings

        tokens = self.auth_service.generate_tokens({"subject_id": username, "username": username})
        now = utcnow()
        try:
            session = self.session_service.create_session(
                {
                    "subject_id": username,
                    "username": username,
                    "connection_string": encrypted_connection,
                    "connection_metadata": connection_metadata,
                    "login_time": now,
                    "last_activity": now,
                },
                ip_address=request_info.ip_address,
                user_agent=request_info.user_agent,
            )
        except ServiceError as e:
            logger.error(f"Session creation failed for {username}: {e.message}")
            # Tokens without a session would be orphaned
            self.auth_service.blacklist_token(tokens.access_token)
            self.auth_service.blacklist_token(tokens.refresh_token)
            return AuthResult.failure(
                "AUTHENTICATION_FAILED",
                "Authentication failed",
                details=e.message if self.settings.debug else None,
            )

        logger.info(f"User {username} logged in (session {session.session_id})")
        return AuthResult(
            success=True,
            tokens=tokens,
            session=session,
            connection_metadata=connection_metadata,
            warnings=warnings,
        )

    def logout_user(self, subject_id: str, token: str | None) -> LogoutResult:
        """Revoke `token`, every refresh family and every session of a subject.

        Each step is attempted even if an earlier one fails; failures are
        collected in `errors`.
        """
        result = LogoutResult()

        if token:
            try:
                result.token_blacklisted = self.auth_service.blacklist_token(token)
            except Exception as e:
                logger.exception(f"Failed to blacklist token for {subject_id}")
                result.errors.append(f"blacklist_token: {e}")

        try:
            result.tokens_invalidated = self.auth_service.logout_user(subject_id)
        except Exception as e:
            logger.exception(f"Failed to invalidate refresh tokens for {subject_id}")
            result.errors.append(f"logout_user: {e}")

        try:
            result.sessions_destroyed = self.session_service.destroy_user_sessions(subject_id)
        except Exception as e:
            logger.exception(f"Failed to destroy sessions for {subject_id}")
            result.errors.append(f"destroy_user_sessions: {e}")

        logger.info(
            f"User {subject_id} logged out: {result.tokens_invalidated} token families, "
            f"{result.sessions_destroyed} sessions"
        )
        return result

    # --- per-request checks ---

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        return self.auth_service.refresh_access_token(refresh_token)

    def validate_access_token(self, token: str) -> dict[str, Any]:
        return self.auth_service.validate_token(token)

    def validate_session(
        self,
        session_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionValidation:
        """Check session security, then load the session.

        Security runs first so idle time is measured before this request
        touches the session. Drift and idle time never revoke the session;
        they are reported through the returned flags and warnings.

        Raises:
            SessionError: INVALID_SESSION when the session is absent, expired
                or undecryptable.
        """
        security = self.session_service.validate_session_security(
            session_id, ip_address=ip_address, user_agent=user_agent
        )
        if not security.valid:
            raise SessionError("Invalid or expired session")

        data = self.session_service.get_session(session_id)
        if data is None:
            raise SessionError("Invalid or expired session")

        return SessionValidation(
            session_id=session_id,
            data=data,
            warnings=security.warnings,
            suspicious_activity=security.suspicious_activity,
            requires_reauth=security.requires_reauth,
        )

    def get_connection_string_from_session(self, session_id: str) -> str | None:
        """Decrypt the connection string stored in a session, or None."""
        data = self.session_service.get_session(session_id)
        if not data or not data.get("connection_string"):
            return None
        try:
            return self.connection_service.decrypt_connection_string(data["connection_string"])
        except DecryptionError:
            logger.warning(f"Failed to decrypt connection string for session {session_id}")
            return None

    def get_stats(self) -> dict[str, Any]:
        return {
            "auth": self.auth_service.get_token_stats(),
            "sessions": self.session_service.get_session_stats(),
            "background_tasks": {task.name: task.running for task in self._tasks},
            "timestamp": utcnow().isoformat(),
        }


def get_service_manager() -> ServiceManager:
    """FastAPI dependency returning the process-wide ServiceManager."""
    return ServiceManager.get_instance()
