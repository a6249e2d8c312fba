"""Key-value storage used by the token and session services.

The services only talk to the KeyValueStore protocol, so the in-memory
implementation can be swapped for a shared store (e.g. Redis) when running
more than one process.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, Protocol, TypeVar

V = TypeVar("V")


def utcnow() -> datetime:
    return datetime.now(UTC)


class KeyValueStore(Protocol[V]):
    """Storage contract shared by all service stores."""

    def get(self, key: str) -> V | None: ...

    def set(self, key: str, value: V, ttl: timedelta | None = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def scan(self, predicate: Callable[[str, V], bool]) -> list[tuple[str, V]]: ...

    def count(self) -> int: ...

    def purge_expired(self) -> int: ...


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: datetime | None = None


class InMemoryStore(Generic[V]):
    """Process-local store with optional per-entry TTL.

    Expired entries are invisible to readers and removed lazily on access
    or by purge_expired().
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: dict[str, _Entry[V]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _is_expired(self, entry: _Entry[Any], now: datetime) -> bool:
        return entry.expires_at is not None and now >= entry.expires_at

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V, ttl: timedelta | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def scan(self, predicate: Callable[[str, V], bool]) -> list[tuple[str, V]]:
        """Return a snapshot of live (key, value) pairs matching predicate."""
        now = self._clock()
        with self._lock:
            live = [
                (key, entry.value)
                for key, entry in self._entries.items()
                if not self._is_expired(entry, now)
            ]
        return [(key, value) for key, value in live if predicate(key, value)]

    def count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for entry in self._entries.values() if not self._is_expired(entry, now))

    def purge_expired(self) -> int:
        """Remove TTL-expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return self.count()
