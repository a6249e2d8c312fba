"""Error types shared by the security services.

Every failure the orchestration layer surfaces is a ServiceError with one of
four kinds. The HTTP layer renders them with error_envelope().
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    SESSION = "session"
    ENCRYPTION = "encryption"


class ServiceError(Exception):
    """Base error carrying a stable machine-readable code.

    Attributes:
        kind: Error category
        code: Stable code for clients (e.g. "INVALID_TOKEN")
        message: Human-readable message, safe to show to users
        details: Optional structured details (e.g. a list of validation errors)
        status_code: HTTP status used when rendered as a response
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    default_code = "SERVICE_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Any = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self, include_details: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if include_details and self.details is not None:
            data["details"] = self.details
        return data


class ValidationError(ServiceError):
    """Malformed or dangerous input. details holds the list of reasons."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_FAILED"
    status_code = 400


class AuthenticationError(ServiceError):
    """Invalid, expired, malformed or revoked credentials."""

    kind = ErrorKind.AUTHENTICATION
    default_code = "AUTHENTICATION_FAILED"
    status_code = 401


class InvalidCredentialsError(AuthenticationError):
    default_code = "INVALID_CREDENTIALS"


class InvalidTokenError(AuthenticationError):
    default_code = "INVALID_TOKEN"
    status_code = 403


class TokenExpiredError(AuthenticationError):
    default_code = "TOKEN_EXPIRED"


class SessionError(ServiceError):
    """Missing, expired, inactive or security-violating session."""

    kind = ErrorKind.SESSION
    default_code = "INVALID_SESSION"
    status_code = 401


class EncryptionError(ServiceError):
    """Cryptographic failure.

    Never shown to clients as-is: services convert it to "not found".
    """

    kind = ErrorKind.ENCRYPTION
    default_code = "ENCRYPTION_ERROR"
    status_code = 500


class DecryptionError(EncryptionError):
    """Ciphertext, IV or authentication tag did not verify."""

    default_code = "DECRYPTION_FAILED"


def error_envelope(code: str, message: str) -> dict[str, Any]:
    """Build the JSON body used for every error response."""
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "timestamp": datetime.now(UTC).isoformat(),
        },
    }
