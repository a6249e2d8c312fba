"""Token issuance, rotation and revocation."""

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jwt.exceptions import PyJWTError

from mongogui.core.config import Settings, get_settings
from mongogui.core.errors import InvalidTokenError, TokenExpiredError, ValidationError
from mongogui.core.store import InMemoryStore, KeyValueStore, utcnow

logger = logging.getLogger(__name__)

# Argon2id with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

ACCESS = "access"
REFRESH = "refresh"

# Claims the service owns; callers cannot override them
RESERVED_CLAIMS = frozenset(
    {"sub", "type", "iat", "exp", "nbf", "iss", "aud", "jti", "fid", "subject_id"}
)


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except (VerificationError, InvalidHashError):
        return False


@dataclass
class RefreshTokenRecord:
    """Server-side state of one refresh-token family."""

    family_id: str
    subject_id: str
    created_at: datetime
    expires_at: datetime
    active: bool = True
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class AuthService:
    """Issues and validates access/refresh token pairs.

    Refresh tokens are single use. Each one belongs to a family whose record
    lives in `refresh_store`; refreshing deletes the record and mints a new
    family, so replaying a consumed refresh token fails.

    Refresh record states: Active -> Rotated (deleted), Expired (deleted)
    or Revoked (active=False). Only Active can transition.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        refresh_store: KeyValueStore[RefreshTokenRecord] | None = None,
        blacklist_store: KeyValueStore[bool] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self.refresh_tokens: KeyValueStore[RefreshTokenRecord] = refresh_store or InMemoryStore(
            clock=clock
        )
        # Raw token strings; each entry expires with the token it revokes
        self.blacklist: KeyValueStore[bool] = blacklist_store or InMemoryStore(clock=clock)

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.jwt_access_token_expire_minutes)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.jwt_refresh_token_expire_days)

    def _encode(self, payload: dict[str, Any]) -> str:
        token = jwt.encode(
            payload,
            self.settings.jwt_secret,
            algorithm=self.settings.jwt_algorithm,
        )
        return str(token)

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        if payload.get("type") != expected_type:
            raise InvalidTokenError("Invalid token type")
        return payload

    def generate_tokens(self, subject_claims: dict[str, Any]) -> TokenPair:
        """Mint an access token and a refresh token for a subject.

        `subject_claims` must carry `subject_id` (or `username`). Other
        non-reserved claims are copied into the access token and reused when
        the pair is rotated.
        """
        subject_id = subject_claims.get("subject_id") or subject_claims.get("username")
        if not subject_id:
            raise ValidationError("subject_id is required to issue tokens")
        subject_id = str(subject_id)
        extra = {k: v for k, v in subject_claims.items() if k not in RESERVED_CLAIMS}

        now = self._clock()
        access_payload = {
            **extra,
            "sub": subject_id,
            "type": ACCESS,
            "iat": now,
            "exp": now + self.access_token_lifetime,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            # jti keeps two tokens issued in the same second distinct
            "jti": secrets.token_hex(16),
        }

        family_id = str(uuid4())
        refresh_payload = {
            "sub": subject_id,
            "fid": family_id,
            "type": REFRESH,
            "iat": now,
            "exp": now + self.refresh_token_lifetime,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }

        self.refresh_tokens.set(
            family_id,
            RefreshTokenRecord(
                family_id=family_id,
                subject_id=subject_id,
                created_at=now,
                expires_at=now + self.refresh_token_lifetime,
                claims=extra,
            ),
        )

        return TokenPair(
            access_token=self._encode(access_payload),
            refresh_token=self._encode(refresh_payload),
            expires_in=int(self.access_token_lifetime.total_seconds()),
        )

    def validate_token(self, token: str) -> dict[str, Any]:
        """Validate an access token and return its claims.

        Raises:
            InvalidTokenError: Blacklisted, bad signature/issuer/audience,
                or not an access token.
            TokenExpiredError: Past its exp claim.
        """
        if not token:
            raise InvalidTokenError("Token is required")
        if self.blacklist.get(token) is not None:
            raise InvalidTokenError("Token has been revoked")
        return self._decode(token, ACCESS)

    def refresh_access_token(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming it."""
        if not refresh_token:
            raise InvalidTokenError("Refresh token is required")
        if self.blacklist.get(refresh_token) is not None:
            raise InvalidTokenError("Refresh token has been revoked")

        payload = self._decode(refresh_token, REFRESH)
        family_id = payload.get("fid")
        record = self.refresh_tokens.get(family_id) if family_id else None

        if record is None or not record.active:
            logger.warning(f"Refresh with unknown or inactive token family for {payload['sub']}")
            raise InvalidTokenError("Refresh token not found or inactive")

        if record.subject_id != payload["sub"]:
            raise InvalidTokenError("Refresh token subject mismatch")

        if self._clock() >= record.expires_at:
            self.refresh_tokens.delete(record.family_id)
            raise TokenExpiredError("Refresh token has expired")

        # Rotation: the consumed family is gone before the new one exists
        self.refresh_tokens.delete(record.family_id)
        return self.generate_tokens({"subject_id": record.subject_id, **record.claims})

    def blacklist_token(self, token: str) -> bool:
        """Revoke a raw token string.

        The token is decoded without verification so that logout works for
        tokens close to (or past) expiry. Returns False for undecodable input.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except PyJWTError:
            return False
        if not isinstance(payload, dict):
            return False

        exp = payload.get("exp")
        now = self._clock()
        if isinstance(exp, int | float):
            ttl = datetime.fromtimestamp(exp, tz=now.tzinfo) - now
        else:
            ttl = self.access_token_lifetime
        # Keep a floor so an already-expired token is still recorded briefly
        ttl = max(ttl, timedelta(seconds=1))
        self.blacklist.set(token, True, ttl=ttl)

        if payload.get("type") == REFRESH and payload.get("fid"):
            record = self.refresh_tokens.get(payload["fid"])
            if record is not None:
                record.active = False
                self.refresh_tokens.set(record.family_id, record)

        return True

    def logout_user(self, subject_id: str) -> int:
        """Revoke every active refresh-token family of a subject."""
        matches = self.refresh_tokens.scan(
            lambda _key, record: record.subject_id == subject_id and record.active
        )
        for family_id, record in matches:
            record.active = False
            self.refresh_tokens.set(family_id, record)
        return len(matches)

    def cleanup_expired_tokens(self) -> int:
        """Delete refresh records past expiry and expired blacklist entries."""
        now = self._clock()
        expired = self.refresh_tokens.scan(lambda _key, record: now >= record.expires_at)
        for family_id, _record in expired:
            self.refresh_tokens.delete(family_id)
        purged = self.blacklist.purge_expired()

        logger.info(
            f"Cleaned up {len(expired)} expired refresh tokens and {purged} blacklist entries"
        )
        return len(expired)

    def get_token_stats(self) -> dict[str, int]:
        active = self.refresh_tokens.scan(lambda _key, record: record.active)
        return {
            "active_refresh_tokens": len(active),
            "total_refresh_tokens": self.refresh_tokens.count(),
            "blacklisted_tokens": self.blacklist.count(),
        }

    @staticmethod
    def extract_token_from_header(auth_header: str | None) -> str | None:
        """Extract the token from an `Authorization: Bearer <token>` header."""
        if not auth_header or not auth_header.startswith("Bearer "):
            return None
        token = auth_header[7:].strip()
        return token or None

    @staticmethod
    def hash_password(password: str) -> str:
        return hash_password(password)

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return verify_password(password, password_hash)
