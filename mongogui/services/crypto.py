"""AES-256-GCM helpers for session payloads and connection strings."""

import logging
import secrets
from dataclasses import asdict, dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mongogui.core.errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Hex-encoded AES-GCM output, JSON serializable via to_dict()."""

    ciphertext: str
    iv: str
    auth_tag: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedEnvelope":
        try:
            return cls(
                ciphertext=str(data["ciphertext"]),
                iv=str(data["iv"]),
                auth_tag=str(data["auth_tag"]),
                algorithm=str(data.get("algorithm", ALGORITHM)),
            )
        except (KeyError, TypeError) as e:
            raise DecryptionError("Malformed encrypted envelope") from e


def derive_key(secret: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 256-bit key from a secret with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class AEADCipher:
    """AES-256-GCM bound to one key and one associated-data context.

    The AAD ties ciphertexts to their purpose, so a session payload cannot be
    replayed as a connection string and vice versa.
    """

    def __init__(self, key: bytes, aad: str):
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)
        self._aad = aad.encode("utf-8")

    def encrypt(self, plaintext: str) -> EncryptedEnvelope:
        iv = secrets.token_bytes(IV_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), self._aad)
        return EncryptedEnvelope(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        """Decrypt an envelope.

        Raises:
            DecryptionError: On unsupported algorithm, malformed hex, wrong
                key, or authentication tag mismatch.
        """
        if envelope.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported encryption algorithm: {envelope.algorithm}")
        try:
            iv = bytes.fromhex(envelope.iv)
            ciphertext = bytes.fromhex(envelope.ciphertext)
            tag = bytes.fromhex(envelope.auth_tag)
        except ValueError as e:
            raise DecryptionError("Encrypted envelope is not valid hex") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Encrypted envelope has invalid IV or tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, self._aad)
        except InvalidTag as e:
            raise DecryptionError("Decryption failed or data tampered") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e
