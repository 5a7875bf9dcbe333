"""Bounded in-memory stores for admission control.

Best Practices:
- Bound total keys: a flood of single-use client IPs must not exhaust memory
- Expire idle entries (TTL measured from last access)
- Thread-safe for concurrent access from request threads
- Clock is injectable so expiry is testable without sleeping
"""
import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

from stylebook.logging_config import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


class BoundedTTLStore(Generic[K, V]):
    """
    Size-bounded LRU map with expire-after-access.

    Pattern: OrderedDict ordered by last access; the front is always the
    least recently used entry, so both idle expiry and size eviction pop
    from the front.

    The store lock guards the map structure only. Values that are mutated
    after retrieval (e.g. attempt windows) carry their own lock.
    """

    def __init__(self, max_size: int, idle_ttl: float, clock: Clock = time.time):
        """
        Initialize store.

        Args:
            max_size: Maximum number of keys kept
            idle_ttl: Seconds without access after which an entry expires
                      (<= 0 disables idle expiry)
            clock: Time source in seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def _is_expired(self, last_access: float, now: float) -> bool:
        return self.idle_ttl > 0 and now - last_access > self.idle_ttl

    def _lookup(self, key: K, now: float) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, last_access = entry
        if self._is_expired(last_access, now):
            del self._entries[key]
            return None
        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        return value

    def _store(self, key: K, value: V, now: float):
        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        self._evict(now)

    def _evict(self, now: float):
        # Idle entries sit at the front because access order is maintained
        while self._entries:
            first_key = next(iter(self._entries))
            _, last_access = self._entries[first_key]
            if not self._is_expired(last_access, now):
                break
            del self._entries[first_key]

        overflow = len(self._entries) - self.max_size
        for _ in range(max(0, overflow)):
            self._entries.popitem(last=False)

    def get(self, key: K) -> Optional[V]:
        """Get live value for key (refreshes its access time)."""
        with self._lock:
            return self._lookup(key, self._clock())

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        """
        Get value for key, creating it atomically when absent.

        Concurrent callers for the same key always receive the same object.
        """
        with self._lock:
            now = self._clock()
            value = self._lookup(key, now)
            if value is None:
                value = factory()
                self._store(key, value, now)
            return value

    def put(self, key: K, value: V):
        with self._lock:
            self._store(key, value, self._clock())

    def compute(self, key: K, remap: Callable[[Optional[V]], Optional[V]]) -> Optional[V]:
        """
        Atomically replace the value for key.

        Args:
            key: Entry key
            remap: Receives the current live value (or None) and returns the
                   new value; returning None removes the entry

        Returns:
            The new value (or None if removed)
        """
        with self._lock:
            now = self._clock()
            current = self._lookup(key, now)
            updated = remap(current)
            if updated is None:
                self._entries.pop(key, None)
            else:
                self._store(key, updated, now)
            return updated

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.pop(key, None)
            return entry[0] if entry else None

    def remove_where(self, predicate: Callable[[K, V], bool]) -> int:
        """Remove every entry matching predicate. Returns number removed."""
        with self._lock:
            doomed = [key for key, (value, _) in self._entries.items() if predicate(key, value)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def cleanup_expired(self) -> int:
        """Remove all idle-expired entries. Returns number removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, (_, last_access) in self._entries.items()
                if self._is_expired(last_access, now)
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class AuthorizationCache:
    """
    Short-TTL memoization of "is this principal an active admin".

    Avoids a storage round trip on every authenticated request.

    Consistency: relaxed. Two requests that miss for the same subject at the
    same moment may both call the loader. An entry is never served once
    expires_at <= now.
    """

    MAX_SUBJECTS = 10_000

    def __init__(self, ttl_seconds: int = 180, clock: Clock = time.time, max_size: int = MAX_SUBJECTS):
        """
        Initialize cache.

        Args:
            ttl_seconds: Lifetime of a cached decision (0 disables caching;
                         negative values clamp to 0)
            clock: Time source in seconds
            max_size: Maximum cached subjects
        """
        self.ttl_seconds = max(0, ttl_seconds)
        self._clock = clock
        self._store: BoundedTTLStore[str, Tuple[bool, float]] = BoundedTTLStore(
            max_size=max_size,
            idle_ttl=self.ttl_seconds,
            clock=clock,
        )

    @staticmethod
    def normalize_subject(subject: Optional[str]) -> str:
        """Match how token subjects are issued (trimmed, lower-case email)."""
        if subject is None:
            return ""
        return subject.strip().lower()

    def is_allowed(self, subject: Optional[str], loader: Callable[[], bool]) -> bool:
        """
        Get cached decision or derive it from the source of truth.

        Args:
            subject: Token subject
            loader: Callable returning the authoritative decision

        Returns:
            True if the subject is an active admin
        """
        if self.ttl_seconds == 0:
            return bool(loader())

        key = self.normalize_subject(subject)
        now = self._clock()

        cached = self._store.get(key)
        if cached is not None:
            allowed, expires_at = cached
            if expires_at > now:
                return allowed
            # Drop only the stale entry we saw, not a fresher concurrent one
            self._store.compute(key, lambda current: None if current == cached else current)

        allowed = bool(loader())
        self._store.put(key, (allowed, now + self.ttl_seconds))
        logger.debug("admin_authorization_loaded", subject=key, allowed=allowed)
        return allowed

    def invalidate(self, subject: Optional[str]):
        """Forget a subject (e.g. after the admin account is deactivated)."""
        self._store.pop(self.normalize_subject(subject))

