"""MongoDB connection string validation, sanitization and encryption.

Pipeline for validate_connection_string():
- shape checks (type, length bounds)
- injection sweep over the raw and percent-decoded input
- parse into a ConnectionDescriptor (urlsplit, with a manual fallback for
  replica-set host lists that are not valid generic URLs)
- validate scheme, hosts, database name and query parameters
- sanitize option values and merge fixed secure defaults
- rebuild the connection string from the descriptor only; the raw input is
  never echoed back
"""

import ipaddress
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit

from mongogui.core.config import Settings, get_settings
from mongogui.core.errors import ValidationError
from mongogui.core.store import utcnow
from mongogui.services.crypto import AEADCipher, EncryptedEnvelope, derive_key

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("mongodb", "mongodb+srv")
DEFAULT_PORT = 27017
MIN_LENGTH = 10
MAX_LENGTH = 2048
MAX_DATABASE_NAME_LENGTH = 64

CONNECTION_AAD = "connection-string"
CONNECTION_KEY_SALT = b"mongodb-connection-salt"

RESERVED_DATABASES = frozenset({"admin", "local", "config"})
INVALID_DATABASE_CHARS = re.compile(r'[/\\. "$*<>:|?@]')

# Option keys that could enable server-side code execution or unrestricted
# aggregation; compared lowercased. Any "$"-prefixed key is rejected too.
DANGEROUS_PARAMS = frozenset(
    {"eval", "where", "$where", "mapreduce", "group", "$function", "$accumulator"}
)

INJECTION_PATTERNS = [
    re.compile(r"\$where", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"function\s*\(", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"\bexec\b", re.IGNORECASE),
    re.compile(r"\bsystem\b", re.IGNORECASE),
    re.compile(r"\.\./"),
    re.compile(r"\x00"),
    re.compile(r"%00"),
]

SCRIPT_VALUE_PATTERN = re.compile(r"<script|javascript:|data:", re.IGNORECASE)

SUSPICIOUS_HOSTNAME_PATTERNS = [
    re.compile(r"[<>'\"&]"),
    re.compile(r"\s"),
    re.compile(r"\.\."),
    re.compile(r"^-"),
    re.compile(r"-$"),
    re.compile(r"\x00"),
]

HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}\.?$)[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?"
    r"(?:\.[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?)*\.?$",
    re.IGNORECASE,
)

PORT_PATTERN = re.compile(r"\d{1,6}", re.ASCII)

PRIVATE_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),  # Private Class A
    ipaddress.ip_network("172.16.0.0/12"),  # Private Class B
    ipaddress.ip_network("192.168.0.0/16"),  # Private Class C
    ipaddress.ip_network("127.0.0.0/8"),  # Loopback
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("::1/128"),  # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),  # IPv6 private
    ipaddress.ip_network("fe80::/10"),  # IPv6 link-local
]

LOCALHOST_NAMES = frozenset({"localhost", "127.0.0.1", "::1"})

READ_PREFERENCES = ("primary", "primaryPreferred", "secondary", "secondaryPreferred", "nearest")
AUTH_MECHANISMS = (
    "SCRAM-SHA-1",
    "SCRAM-SHA-256",
    "MONGODB-X509",
    "MONGODB-AWS",
    "GSSAPI",
    "PLAIN",
)
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
APP_NAME_PATTERN = re.compile(r"^[\w .-]{1,128}$")

# lowercased key -> (canonical name, (min, max))
INTEGER_OPTIONS: dict[str, tuple[str, tuple[int, int]]] = {
    "maxpoolsize": ("maxPoolSize", (1, 100)),
    "minpoolsize": ("minPoolSize", (0, 100)),
    "maxidletimems": ("maxIdleTimeMS", (0, 3_600_000)),
    "serverselectiontimeoutms": ("serverSelectionTimeoutMS", (1, 120_000)),
    "sockettimeoutms": ("socketTimeoutMS", (0, 600_000)),
    "connecttimeoutms": ("connectTimeoutMS", (1, 120_000)),
    "waitqueuetimeoutms": ("waitQueueTimeoutMS", (0, 600_000)),
    "heartbeatfrequencyms": ("heartbeatFrequencyMS", (500, 600_000)),
}
BOOLEAN_OPTIONS: dict[str, str] = {
    "ssl": "ssl",
    "tls": "tls",
    "directconnection": "directConnection",
    "retryreads": "retryReads",
    "retrywrites": "retryWrites",
}
ENUM_OPTIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "readpreference": ("readPreference", READ_PREFERENCES),
    "authmechanism": ("authMechanism", AUTH_MECHANISMS),
}
PATTERN_OPTIONS: dict[str, tuple[str, re.Pattern[str]]] = {
    "replicaset": ("replicaSet", IDENTIFIER_PATTERN),
    "authsource": ("authSource", IDENTIFIER_PATTERN),
    "appname": ("appName", APP_NAME_PATTERN),
}


@dataclass(frozen=True)
class HostAddress:
    hostname: str
    port: int = DEFAULT_PORT
    explicit_port: bool = False

    def render(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        if self.port != DEFAULT_PORT:
            return f"{host}:{self.port}"
        return host


@dataclass
class ConnectionDescriptor:
    """Structured form of a connection string."""

    scheme: str
    hosts: list[HostAddress]
    database: str | None = None
    username: str | None = None
    password: str | None = None
    options: dict[str, str] = field(default_factory=dict)

    @property
    def has_auth(self) -> bool:
        return bool(self.username and self.password)

    def redacted(self) -> str:
        """Render without the password or options, for logs."""
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            auth += ":****@" if self.password else "@"
        hosts = ",".join(host.render() for host in self.hosts)
        database = f"/{self.database}" if self.database else ""
        return f"{self.scheme}://{auth}{hosts}{database}"


@dataclass
class InjectionCheckResult:
    safe: bool = True
    threats: list[str] = field(default_factory=list)


@dataclass
class ConnectionValidationResult:
    valid: bool = False
    sanitized: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    descriptor: ConnectionDescriptor | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "sanitized": self.sanitized,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


def is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is in a private, loopback or link-local range.

    IPv4-mapped IPv6 addresses (e.g. ::ffff:127.0.0.1) are checked against
    the IPv4 ranges.
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == network.version and ip in network for network in PRIVATE_IP_RANGES)


def is_private_or_localhost(hostname: str) -> bool:
    name = hostname.lower().rstrip(".")
    if name == "localhost" or name.endswith(".localhost"):
        return True
    return is_private_ip(name)


def is_suspicious_hostname(hostname: str) -> bool:
    return any(pattern.search(hostname) for pattern in SUSPICIOUS_HOSTNAME_PATTERNS)


def is_atlas_connection(hosts: list[HostAddress]) -> bool:
    return any(host.hostname.lower().rstrip(".").endswith(".mongodb.net") for host in hosts)


def is_localhost_connection(hosts: list[HostAddress]) -> bool:
    for host in hosts:
        name = host.hostname.lower()
        if name in LOCALHOST_NAMES:
            return True
        try:
            if ipaddress.ip_address(name).is_loopback:
                return True
        except ValueError:
            continue
    return False


def is_valid_hostname(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
        return True
    except ValueError:
        return bool(HOSTNAME_PATTERN.match(hostname))


def check_for_injection_attempts(raw: str) -> InjectionCheckResult:
    """Regex sweep for NoSQL/script injection signatures.

    Runs on the raw string and on its percent-decoded form, so encoding a
    payload does not hide it. Each matching signature is reported once.
    """
    result = InjectionCheckResult()
    decoded = unquote(raw)
    for pattern in INJECTION_PATTERNS:
        if pattern.search(raw) or pattern.search(decoded):
            result.safe = False
            result.threats.append(f"Potential injection attempt detected: {pattern.pattern}")
    return result


def _parse_port(text: str) -> int:
    if not PORT_PATTERN.fullmatch(text):
        raise ValidationError(f"Invalid port: {text}")
    return int(text)


def _parse_host(entry: str) -> HostAddress:
    entry = entry.strip()
    if not entry:
        raise ValidationError("Empty host entry")

    if entry.startswith("["):
        end = entry.find("]")
        if end == -1:
            raise ValidationError(f"Unterminated IPv6 address: {entry}")
        hostname = entry[1:end]
        remainder = entry[end + 1 :]
        if remainder and not remainder.startswith(":"):
            raise ValidationError(f"Invalid host entry: {entry}")
        port_text = remainder[1:]
    else:
        hostname, _, port_text = entry.partition(":")
        if ":" in port_text:
            raise ValidationError(f"Invalid host entry: {entry}")

    if port_text:
        return HostAddress(hostname.lower(), _parse_port(port_text), explicit_port=True)
    return HostAddress(hostname.lower())


def _parse_standard(raw: str) -> ConnectionDescriptor | None:
    """Parse with urlsplit; None when the string needs the manual grammar."""
    # urlsplit silently drops tabs and newlines
    if re.search(r"\s", raw):
        return None
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or "," in parts.netloc or not parts.hostname:
        return None

    host = HostAddress(
        hostname=parts.hostname,
        port=DEFAULT_PORT if port is None else port,
        explicit_port=port is not None,
    )
    return ConnectionDescriptor(
        scheme=parts.scheme.lower(),
        hosts=[host],
        database=unquote(parts.path.lstrip("/")) or None,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password is not None else None,
        options=dict(parse_qsl(parts.query, keep_blank_values=True)),
    )


def _parse_manual(raw: str) -> ConnectionDescriptor:
    """Parse `scheme://[user[:pass]@]host[:port][,host[:port]...][/db][?query]`."""
    scheme, sep, rest = raw.partition("://")
    if not sep or not scheme:
        raise ValidationError("Invalid or missing scheme")

    rest, _, query = rest.partition("?")
    # Credentials must percent-escape "/", so the first "/" ends the authority
    authority, _, path = rest.partition("/")
    userinfo, _, hostlist = authority.rpartition("@")

    username = password = None
    if userinfo:
        user_text, colon, password_text = userinfo.partition(":")
        username = unquote(user_text) or None
        password = unquote(password_text) if colon else None

    if not hostlist:
        raise ValidationError("At least one host must be specified")

    return ConnectionDescriptor(
        scheme=scheme.lower(),
        hosts=[_parse_host(entry) for entry in hostlist.split(",")],
        database=unquote(path) or None,
        username=username,
        password=password,
        options=dict(parse_qsl(query, keep_blank_values=True)),
    )


def parse_connection_string(raw: str) -> ConnectionDescriptor:
    """Parse a connection string without validating its contents.

    Raises:
        ValidationError: If the string does not follow the connection string
            grammar at all.
    """
    descriptor = _parse_standard(raw)
    if descriptor is not None:
        return descriptor
    return _parse_manual(raw)


def build_sanitized_connection_string(descriptor: ConnectionDescriptor) -> str:
    """Assemble a connection string from descriptor fields only."""
    url = f"{descriptor.scheme}://"
    if descriptor.username:
        url += quote(descriptor.username, safe="")
        if descriptor.password:
            url += ":" + quote(descriptor.password, safe="")
        url += "@"
    url += ",".join(host.render() for host in descriptor.hosts)
    if descriptor.database:
        url += "/" + quote(descriptor.database, safe="")
    if descriptor.options:
        if not descriptor.database:
            url += "/"
        url += "?" + urlencode(descriptor.options)
    return url


class ConnectionService:
    """Validates, sanitizes and encrypts MongoDB connection strings."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._cipher = AEADCipher(
            derive_key(self.settings.session_secret, CONNECTION_KEY_SALT),
            aad=CONNECTION_AAD,
        )

    @property
    def secure_defaults(self) -> dict[str, str]:
        return {
            "readPreference": "secondaryPreferred",
            "maxPoolSize": str(self.settings.mongodb_max_pool_size),
            "minPoolSize": str(self.settings.mongodb_min_pool_size),
            "maxIdleTimeMS": str(self.settings.mongodb_max_idle_time_ms),
            "serverSelectionTimeoutMS": str(self.settings.mongodb_server_selection_timeout_ms),
            "socketTimeoutMS": "30000",
            "connectTimeoutMS": "10000",
            "retryWrites": "false",
            "retryReads": "true",
        }

    # Classification helpers, exposed on the service for callers holding one
    is_atlas_connection = staticmethod(is_atlas_connection)
    is_localhost_connection = staticmethod(is_localhost_connection)
    is_private_or_localhost = staticmethod(is_private_or_localhost)
    is_suspicious_hostname = staticmethod(is_suspicious_hostname)
    check_for_injection_attempts = staticmethod(check_for_injection_attempts)
    parse_connection_string = staticmethod(parse_connection_string)
    build_sanitized_connection_string = staticmethod(build_sanitized_connection_string)

    def validate_connection_string(self, raw: Any) -> ConnectionValidationResult:
        """Run the full validation pipeline.

        Never raises for bad input: every problem found is reported in
        `errors` and the result is valid only when there are none.
        """
        result = ConnectionValidationResult()

        if not isinstance(raw, str) or not raw.strip():
            result.errors.append("Connection string must be a non-empty string")
            return result

        raw = raw.strip()
        if len(raw) < MIN_LENGTH:
            result.errors.append("Connection string is too short")
            return result
        if len(raw) > MAX_LENGTH:
            result.errors.append(f"Connection string is too long (max {MAX_LENGTH} characters)")
            return result

        injection = check_for_injection_attempts(raw)
        result.errors.extend(injection.threats)

        try:
            descriptor = parse_connection_string(raw)
        except ValidationError as e:
            result.errors.append(f"Invalid connection string format: {e.message}")
            return result

        if descriptor.scheme not in ALLOWED_SCHEMES:
            result.errors.append(
                f"Invalid scheme: {descriptor.scheme}. Allowed: {', '.join(ALLOWED_SCHEMES)}"
            )
            return result

        self._validate_hosts(descriptor, result)
        if descriptor.database:
            result.errors.extend(self.validate_database_name(descriptor.database))
        options = self._validate_options(descriptor.options, result)

        if result.errors:
            logger.warning(f"Connection string rejected with {len(result.errors)} error(s)")
            return result

        sanitized = replace(descriptor, options=options)
        result.descriptor = sanitized
        result.sanitized = build_sanitized_connection_string(sanitized)
        result.valid = True
        result.metadata = {
            "scheme": sanitized.scheme,
            "host_count": len(sanitized.hosts),
            "has_auth": sanitized.has_auth,
            "database": sanitized.database,
            "is_atlas": is_atlas_connection(sanitized.hosts),
            "is_localhost": is_localhost_connection(sanitized.hosts),
        }
        logger.debug(f"Connection string accepted: {sanitized.redacted()}")
        return result

    def _validate_hosts(
        self, descriptor: ConnectionDescriptor, result: ConnectionValidationResult
    ) -> None:
        if not descriptor.hosts:
            result.errors.append("At least one host must be specified")
            return

        if descriptor.scheme == "mongodb+srv":
            if len(descriptor.hosts) != 1:
                result.errors.append("mongodb+srv connection strings must specify exactly one host")
            if any(host.explicit_port for host in descriptor.hosts):
                result.errors.append("mongodb+srv connection strings must not specify a port")

        for host in descriptor.hosts:
            if not host.hostname:
                result.errors.append("Invalid hostname")
                continue
            if is_suspicious_hostname(host.hostname):
                result.errors.append(f"Suspicious hostname detected: {host.hostname}")
                continue
            if not is_valid_hostname(host.hostname):
                result.errors.append(f"Invalid hostname: {host.hostname}")
            if not 1 <= host.port <= 65535:
                result.errors.append(f"Invalid port number: {host.port}")
            if self.settings.is_production and is_private_or_localhost(host.hostname):
                result.warnings.append(f"Using localhost/private IP in production: {host.hostname}")

    @staticmethod
    def validate_database_name(database: str) -> list[str]:
        errors = []
        if len(database) > MAX_DATABASE_NAME_LENGTH:
            errors.append(f"Database name too long (max {MAX_DATABASE_NAME_LENGTH} characters)")
        if INVALID_DATABASE_CHARS.search(database):
            errors.append("Database name contains invalid characters")
        if database.lower() in RESERVED_DATABASES:
            errors.append(f"Database name '{database}' is reserved")
        return errors

    def _validate_options(
        self, options: dict[str, str], result: ConnectionValidationResult
    ) -> dict[str, str]:
        """Reject dangerous keys, sanitize the rest and merge secure defaults."""
        accepted: dict[str, str] = {}
        for key, value in options.items():
            lowered = key.lower()
            if lowered in DANGEROUS_PARAMS or key.startswith("$"):
                result.errors.append(f"Dangerous parameter not allowed: {key}")
                continue

            sanitized = self.sanitize_parameter_value(key, value)
            if sanitized is None:
                result.warnings.append(f"Parameter '{key}' was removed during sanitization")
                continue
            accepted[sanitized[0]] = sanitized[1]

        merged = {**self.secure_defaults, **accepted}
        # Read-only access: never allow retryable writes
        if accepted.get("retryWrites", "false") != "false":
            result.warnings.append("retryWrites is always disabled")
        merged["retryWrites"] = "false"

        if int(merged["minPoolSize"]) > int(merged["maxPoolSize"]):
            result.warnings.append("minPoolSize exceeds maxPoolSize; clamped to maxPoolSize")
            merged["minPoolSize"] = merged["maxPoolSize"]
        return merged

    @staticmethod
    def sanitize_parameter_value(key: str, value: str) -> tuple[str, str] | None:
        """Return `(canonical_key, value)` for a known, well-formed option.

        None means the option is unknown or its value is out of range or
        carries a script marker; the caller drops it.
        """
        if not isinstance(value, str) or SCRIPT_VALUE_PATTERN.search(value):
            return None

        lowered = key.lower()
        if lowered in INTEGER_OPTIONS:
            name, (low, high) = INTEGER_OPTIONS[lowered]
            try:
                number = int(value)
            except ValueError:
                return None
            return (name, str(number)) if low <= number <= high else None

        if lowered in BOOLEAN_OPTIONS:
            flag = value.lower()
            return (BOOLEAN_OPTIONS[lowered], flag) if flag in ("true", "false") else None

        if lowered in ENUM_OPTIONS:
            name, allowed = ENUM_OPTIONS[lowered]
            for choice in allowed:
                if value.lower() == choice.lower():
                    return name, choice
            return None

        if lowered in PATTERN_OPTIONS:
            name, pattern = PATTERN_OPTIONS[lowered]
            return (name, value) if pattern.match(value) else None

        return None

    # --- encryption ---

    def encrypt_connection_string(self, connection_string: str) -> dict[str, str]:
        """Encrypt a (sanitized) connection string for storage in a session."""
        envelope = self._cipher.encrypt(connection_string)
        return {**envelope.to_dict(), "timestamp": self._clock().isoformat()}

    def decrypt_connection_string(self, data: dict[str, Any]) -> str:
        """Decrypt the output of encrypt_connection_string().

        Raises:
            DecryptionError: Malformed data, wrong key or tampered ciphertext.
        """
        return self._cipher.decrypt(EncryptedEnvelope.from_dict(data))
