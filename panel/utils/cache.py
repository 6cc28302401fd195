import threading
import time


class TTLCache:
    """Small in-process cache keyed by string, with per-entry TTL.

    One instance is owned by whichever client needs it and passed around
    explicitly; ``evict_expired`` is run by the scheduler so entries for
    identities that are never looked up again do not accumulate.
    """

    def __init__(self, default_ttl_seconds: float = 60, clock=time.monotonic):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[object, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return default
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return default
            return value

    def set(self, key: str, value, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
