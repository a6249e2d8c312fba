"""Encrypted server-side sessions.

Session payloads are stored only as AES-256-GCM envelopes. Any envelope
that fails to decrypt is treated as if the session did not exist, and the
session is destroyed.
"""

import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any
from uuid import uuid4

from mongogui.core.config import Settings, get_settings
from mongogui.core.errors import DecryptionError, ValidationError
from mongogui.core.store import InMemoryStore, KeyValueStore, utcnow
from mongogui.services.crypto import AEADCipher, EncryptedEnvelope, derive_key

logger = logging.getLogger(__name__)

SESSION_AAD = "session-data"
RANDOM_SALT_BYTES = 32


@dataclass
class SecurityFlags:
    requires_reauth: bool = False
    suspicious_activity: bool = False


@dataclass
class SessionMetadata:
    login_count: int
    last_login_at: datetime
    security_flags: SecurityFlags = field(default_factory=SecurityFlags)


@dataclass
class Session:
    session_id: str
    encrypted_payload: EncryptedEnvelope
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    max_age: timedelta
    metadata: SessionMetadata
    ip_address: str | None = None
    user_agent: str | None = None
    active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class SessionHandle:
    """What the client gets back from create_session."""

    session_id: str
    expires_at: datetime
    max_age: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "expires_at": self.expires_at.isoformat(),
            "max_age": self.max_age,
        }


@dataclass
class SessionSecurityResult:
    valid: bool
    warnings: list[str] = field(default_factory=list)
    requires_reauth: bool = False
    suspicious_activity: bool = False
    reason: str | None = None


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SessionService:
    """Creates, reads, updates and destroys encrypted sessions."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: KeyValueStore[Session] | None = None,
        key: bytes | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self.sessions: KeyValueStore[Session] = store or InMemoryStore(clock=clock)
        self.default_max_age = timedelta(seconds=self.settings.session_max_age_seconds)
        self.idle_warning = timedelta(seconds=self.settings.session_idle_warning_seconds)

        if key is None:
            salt = self.settings.session_key_salt_bytes
            if salt is None:
                salt = secrets.token_bytes(RANDOM_SALT_BYTES)
                logger.warning(
                    "SESSION_KEY_SALT not set; using a per-process salt. "
                    "Existing sessions become unreadable after a restart."
                )
            key = derive_key(self.settings.session_secret, salt)
        self._cipher = AEADCipher(key, aad=SESSION_AAD)

    # --- encryption ---

    def encrypt_session_data(self, data: dict[str, Any]) -> EncryptedEnvelope:
        return self._cipher.encrypt(json.dumps(data, default=_json_default))

    def decrypt_session_data(self, envelope: EncryptedEnvelope) -> dict[str, Any]:
        plaintext = self._cipher.decrypt(envelope)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("Session payload is not valid JSON") from e
        if not isinstance(data, dict):
            raise DecryptionError("Session payload is not an object")
        return data

    # --- lifecycle ---

    def create_session(
        self,
        payload: dict[str, Any],
        *,
        max_age: int | timedelta | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionHandle:
        """Encrypt `payload` and store it under a new random session id.

        Args:
            payload: JSON-serializable mapping (datetimes become ISO strings)
            max_age: Lifetime in seconds or as a timedelta; defaults to
                SESSION_MAX_AGE_SECONDS
            ip_address: Client IP the session is bound to
            user_agent: Client user agent the session is bound to
        """
        if not isinstance(payload, dict):
            raise ValidationError("Session payload must be a mapping")
        if max_age is None:
            lifetime = self.default_max_age
        elif isinstance(max_age, timedelta):
            lifetime = max_age
        else:
            lifetime = timedelta(seconds=max_age)
        if lifetime <= timedelta(0):
            raise ValidationError("Session max_age must be positive")

        now = self._clock()
        session_id = str(uuid4())
        session = Session(
            session_id=session_id,
            encrypted_payload=self.encrypt_session_data(payload),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + lifetime,
            max_age=lifetime,
            metadata=SessionMetadata(login_count=1, last_login_at=now),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.sessions.set(session_id, session)

        logger.info(f"Session created: {session_id} (expires: {session.expires_at.isoformat()})")
        return SessionHandle(
            session_id=session_id,
            expires_at=session.expires_at,
            max_age=int(lifetime.total_seconds()),
        )

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        """Return the decrypted payload plus `session_metadata`, or None.

        Expired, inactive and undecryptable sessions are destroyed.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return None

        now = self._clock()
        if session.is_expired(now) or not session.active:
            self.destroy_session(session_id)
            return None

        try:
            data = self.decrypt_session_data(session.encrypted_payload)
        except DecryptionError:
            logger.warning(f"Failed to decrypt session {session_id}; destroying it")
            self.destroy_session(session_id)
            return None

        session.last_accessed_at = now
        self.sessions.set(session_id, session)
        return {**data, "session_metadata": self._metadata_view(session)}

    def update_session(
        self,
        session_id: str,
        new_data: dict[str, Any],
        *,
        merge: bool = False,
        extend_expiry: bool = False,
        increment_login_count: bool = False,
    ) -> bool:
        """Re-encrypt a session's payload. Returns False if it is not live."""
        session = self.sessions.get(session_id)
        if session is None or not session.active:
            return False

        now = self._clock()
        if session.is_expired(now):
            self.destroy_session(session_id)
            return False

        data = new_data
        if merge:
            try:
                data = {**self.decrypt_session_data(session.encrypted_payload), **new_data}
            except DecryptionError:
                logger.warning(f"Failed to decrypt session {session_id} on update; destroying it")
                self.destroy_session(session_id)
                return False

        session.encrypted_payload = self.encrypt_session_data(data)
        session.last_accessed_at = now
        if extend_expiry:
            session.expires_at = now + session.max_age
        if increment_login_count:
            session.metadata.login_count += 1
            session.metadata.last_login_at = now

        self.sessions.set(session_id, session)
        return True

    def destroy_session(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        session.active = False
        self.sessions.delete(session_id)
        logger.info(f"Session destroyed: {session_id}")
        return True

    def destroy_user_sessions(self, subject_id: str) -> int:
        """Destroy every session whose payload belongs to `subject_id`.

        Payloads are encrypted, so this decrypts each active session. Sessions
        that fail to decrypt are destroyed too and included in the count.
        """
        destroyed = 0
        for session_id, session in self.sessions.scan(lambda _key, s: s.active):
            try:
                data = self.decrypt_session_data(session.encrypted_payload)
            except DecryptionError:
                self.destroy_session(session_id)
                destroyed += 1
                continue
            if data.get("subject_id") == subject_id:
                self.destroy_session(session_id)
                destroyed += 1
        return destroyed

    def validate_session_security(
        self,
        session_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionSecurityResult:
        """Check a session against the current request.

        Only a missing, expired or inactive session is invalid. Drift in the
        IP address or user agent marks the session as suspicious; drift in
        both also sets requires_reauth. None of these revoke the session,
        and idle time only warns.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return SessionSecurityResult(valid=False, reason="Session not found")

        now = self._clock()
        if not session.active or session.is_expired(now):
            return SessionSecurityResult(valid=False, reason="Session expired or inactive")

        warnings = []
        flags = session.metadata.security_flags

        if session.ip_address and ip_address and session.ip_address != ip_address:
            warnings.append("IP address changed")
            flags.suspicious_activity = True

        if session.user_agent and user_agent and session.user_agent != user_agent:
            warnings.append("User agent changed")
            flags.suspicious_activity = True

        # Both signals changing at once looks like a stolen session id
        if len(warnings) == 2:
            flags.requires_reauth = True

        if now - session.last_accessed_at > self.idle_warning:
            warnings.append("Long period of inactivity")

        if flags.suspicious_activity:
            self.sessions.set(session_id, session)
            if warnings:
                logger.warning(
                    f"Suspicious activity on session {session_id}: {', '.join(warnings)}"
                )

        return SessionSecurityResult(
            valid=True,
            warnings=warnings,
            requires_reauth=flags.requires_reauth,
            suspicious_activity=flags.suspicious_activity,
        )

    def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        stale = self.sessions.scan(lambda _key, s: s.is_expired(now) or not s.active)
        for session_id, _session in stale:
            self.sessions.delete(session_id)

        logger.info(f"Cleaned up {len(stale)} expired sessions")
        return len(stale)

    def get_session_stats(self) -> dict[str, Any]:
        now = self._clock()
        total = self.sessions.count()
        active = len(self.sessions.scan(lambda _key, s: s.active and not s.is_expired(now)))
        return {
            "total_sessions": total,
            "active_sessions": active,
            "expired_sessions": total - active,
            "cleanup_needed": total > active,
        }

    @staticmethod
    def _metadata_view(session: Session) -> dict[str, Any]:
        return {
            "id": session.session_id,
            "created_at": session.created_at,
            "last_accessed_at": session.last_accessed_at,
            "expires_at": session.expires_at,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "metadata": asdict(session.metadata),
        }
