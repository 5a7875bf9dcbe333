"""Rate limiting for public endpoints and admin login.

Two independent mechanisms:
- SlidingWindowLimiter: per-key ceilings over trailing 60s and 3600s windows
  (public booking, AI suggestions).
- BackoffLimiter: failure-triggered exponential lockout keyed by client IP
  and by e-mail (admin login).

Both keep state in BoundedTTLStore, so memory is bounded by configured key
counts, not by historical traffic.
NOT for: Multi-instance deployments (limits are per process).
"""
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Optional, Tuple

from stylebook.cache import BoundedTTLStore, Clock
from stylebook.client_ip import UNKNOWN_CLIENT
from stylebook.errors import RateLimitExceeded
from stylebook.logging_config import get_logger

logger = get_logger(__name__)

MINUTE_SECONDS = 60
HOUR_SECONDS = 3600


def normalize_ip_key(ip: Optional[str]) -> str:
    if ip is None or not ip.strip():
        return UNKNOWN_CLIENT
    return ip.strip()


def normalize_email_key(email: Optional[str]) -> str:
    if email is None or not email.strip():
        return UNKNOWN_CLIENT
    return email.strip().lower()


class AttemptWindow:
    """
    Timestamps of recent attempts for one key.

    Two ordered deques (minute-scoped, hour-scoped), purged lazily before
    every read or write so every stored timestamp lies inside its horizon.
    All access is serialized by a per-window lock.
    """

    def __init__(self):
        self.minute_attempts: Deque[float] = deque()
        self.hour_attempts: Deque[float] = deque()
        self.lock = threading.Lock()

    def _purge(self, now: float):
        minute_threshold = now - MINUTE_SECONDS
        while self.minute_attempts and self.minute_attempts[0] <= minute_threshold:
            self.minute_attempts.popleft()

        hour_threshold = now - HOUR_SECONDS
        while self.hour_attempts and self.hour_attempts[0] <= hour_threshold:
            self.hour_attempts.popleft()

    def attempts_in_last_minute(self, now: float) -> int:
        with self.lock:
            self._purge(now)
            return len(self.minute_attempts)

    def attempts_in_last_hour(self, now: float) -> int:
        with self.lock:
            self._purge(now)
            return len(self.hour_attempts)

    def record(self, now: float):
        with self.lock:
            self._purge(now)
            self.minute_attempts.append(now)
            self.hour_attempts.append(now)

    def _rejection(self, now: float, max_per_minute: int, max_per_hour: int) -> Optional[Tuple[str, int]]:
        """Return (window, retry_after) if a ceiling is reached. Caller holds the lock."""
        self._purge(now)
        if len(self.minute_attempts) >= max_per_minute:
            oldest = self.minute_attempts[0]
            return "minute", int(MINUTE_SECONDS - (now - oldest)) + 1
        if len(self.hour_attempts) >= max_per_hour:
            oldest = self.hour_attempts[0]
            return "hour", int(HOUR_SECONDS - (now - oldest)) + 1
        return None

    def rejection(self, now: float, max_per_minute: int, max_per_hour: int) -> Optional[Tuple[str, int]]:
        with self.lock:
            return self._rejection(now, max_per_minute, max_per_hour)

    def admit(self, now: float, max_per_minute: int, max_per_hour: int) -> Optional[Tuple[str, int]]:
        """Check and record in one step. Returns the rejection, or None if recorded."""
        with self.lock:
            rejected = self._rejection(now, max_per_minute, max_per_hour)
            if rejected is None:
                self.minute_attempts.append(now)
                self.hour_attempts.append(now)
            return rejected


class SlidingWindowLimiter:
    """
    Per-key admission control with per-minute and per-hour ceilings.

    Pattern: Sliding window, check and record as separate steps so callers
    can check-then-decide-then-record.
    Good for: Public booking and AI endpoints keyed by client IP.
    """

    MAX_KEYS = 20_000

    def __init__(
        self,
        name: str,
        max_per_minute: int,
        max_per_hour: int,
        max_keys: int = MAX_KEYS,
        idle_seconds: float = 2 * HOUR_SECONDS,
        clock: Clock = time.time,
        minute_message: str = "Too many requests in a short time. Try again in a minute.",
        hour_message: str = "Too many requests from your address. Try again later.",
    ):
        """
        Initialize limiter.

        Args:
            name: Label used in logs (e.g. "booking")
            max_per_minute: Ceiling for the trailing 60s window
            max_per_hour: Ceiling for the trailing 3600s window
            max_keys: Maximum distinct keys tracked (LRU eviction beyond)
            idle_seconds: Drop a key's window after this long without access
            clock: Time source in seconds
        """
        if max_per_minute < 1 or max_per_hour < 1:
            raise ValueError("Rate limits must be >= 1")
        self.name = name
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self.minute_message = minute_message
        self.hour_message = hour_message
        self._clock = clock
        self._windows: BoundedTTLStore[str, AttemptWindow] = BoundedTTLStore(
            max_size=max_keys,
            idle_ttl=idle_seconds,
            clock=clock,
        )

    def _raise(self, key: str, rejected: Tuple[str, int]):
        window, retry_after = rejected
        logger.warning(
            "rate_limit_rejected",
            limiter=self.name,
            key=key,
            window=window,
            retry_after=retry_after,
        )
        message = self.minute_message if window == "minute" else self.hour_message
        raise RateLimitExceeded(message, retry_after=max(1, retry_after))

    def check_allowed(self, key: Optional[str]):
        """
        Check whether key may proceed. Does not record an attempt.

        Raises:
            RateLimitExceeded: If either window is at or above its ceiling
        """
        normalized = normalize_ip_key(key)
        window = self._windows.get(normalized)
        if window is None:
            return
        rejected = window.rejection(self._clock(), self.max_per_minute, self.max_per_hour)
        if rejected is not None:
            self._raise(normalized, rejected)

    def record_attempt(self, key: Optional[str]):
        """Append the current time to both windows for key."""
        normalized = normalize_ip_key(key)
        window = self._windows.get_or_create(normalized, AttemptWindow)
        window.record(self._clock())

    def acquire(self, key: Optional[str]):
        """
        Check and record atomically for one key.

        Raises:
            RateLimitExceeded: If either window is at or above its ceiling
                               (nothing is recorded in that case)
        """
        normalized = normalize_ip_key(key)
        window = self._windows.get_or_create(normalized, AttemptWindow)
        rejected = window.admit(self._clock(), self.max_per_minute, self.max_per_hour)
        if rejected is not None:
            self._raise(normalized, rejected)

    def get_limit_info(self, key: Optional[str]) -> dict:
        """Get current rate limit status for key."""
        window = self._windows.get(normalize_ip_key(key))
        now = self._clock()
        minute_count = window.attempts_in_last_minute(now) if window else 0
        hour_count = window.attempts_in_last_hour(now) if window else 0
        return {
            "minute_limit": self.max_per_minute,
            "minute_remaining": max(0, self.max_per_minute - minute_count),
            "hour_limit": self.max_per_hour,
            "hour_remaining": max(0, self.max_per_hour - hour_count),
        }

    def tracked_keys(self) -> int:
        return len(self._windows)


@dataclass(frozen=True)
class BackoffState:
    """Lockout bookkeeping for one login key."""
    failure_count: int = 0
    blocked_until: float = 0.0
    last_failure_at: float = 0.0


class BackoffLimiter:
    """
    Exponential lockout after failed logins.

    After k consecutive failures a key is blocked for
    min(2 ** min(k, 8), 300) seconds. A success clears the key entirely.
    IP and e-mail are tracked in separate stores; either one being blocked
    rejects the attempt.
    """

    MAX_BACKOFF_SECONDS = 300
    MAX_EXPONENT = 8
    MAX_KEYS = 20_000
    STALE_AFTER_SECONDS = 24 * HOUR_SECONDS
    GC_INTERVAL_SECONDS = 60

    def __init__(
        self,
        max_keys: int = MAX_KEYS,
        stale_after_seconds: float = STALE_AFTER_SECONDS,
        clock: Clock = time.time,
    ):
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._by_ip: BoundedTTLStore[str, BackoffState] = BoundedTTLStore(
            max_size=max_keys, idle_ttl=stale_after_seconds, clock=clock
        )
        self._by_email: BoundedTTLStore[str, BackoffState] = BoundedTTLStore(
            max_size=max_keys, idle_ttl=stale_after_seconds, clock=clock
        )
        self._gc_lock = threading.Lock()
        self._last_gc = clock()

    @classmethod
    def backoff_seconds(cls, failure_count: int) -> int:
        exponent = min(failure_count, cls.MAX_EXPONENT)
        return min(2 ** exponent, cls.MAX_BACKOFF_SECONDS)

    def check_allowed(self, ip: Optional[str], email_key: Optional[str]):
        """
        Reject while either key is locked out.

        Raises:
            RateLimitExceeded: If IP or e-mail blocked_until is in the future
        """
        now = self._clock()
        self._check_key(self._by_ip, normalize_ip_key(ip), now)
        self._check_key(self._by_email, normalize_email_key(email_key), now)

    def _check_key(self, store: BoundedTTLStore[str, BackoffState], key: str, now: float):
        state = store.get(key)
        if state is None or state.blocked_until <= now:
            return
        retry_after = max(1, math.ceil(state.blocked_until - now))
        logger.warning(
            "login_backoff_active",
            key=key,
            failure_count=state.failure_count,
            retry_after=retry_after,
        )
        raise RateLimitExceeded(
            "Too many attempts. Try again in a few minutes.",
            retry_after=retry_after,
        )

    def record_failure(self, ip: Optional[str], email_key: Optional[str]):
        """Increment both keys' failure counters and extend their lockout."""
        now = self._clock()
        ip_state = self._register_failure(self._by_ip, normalize_ip_key(ip), now)
        self._register_failure(self._by_email, normalize_email_key(email_key), now)
        logger.warning(
            "login_failure_recorded",
            ip=normalize_ip_key(ip),
            failure_count=ip_state.failure_count,
            blocked_seconds=self.backoff_seconds(ip_state.failure_count),
        )
        self._collect_stale(now)

    def _register_failure(self, store: BoundedTTLStore[str, BackoffState], key: str, now: float) -> BackoffState:
        def remap(existing: Optional[BackoffState]) -> BackoffState:
            current = existing or BackoffState()
            failure_count = current.failure_count + 1
            return replace(
                current,
                failure_count=failure_count,
                last_failure_at=now,
                blocked_until=now + self.backoff_seconds(failure_count),
            )

        return store.compute(key, remap)

    def record_success(self, ip: Optional[str], email_key: Optional[str]):
        """Clear both keys outright."""
        self._by_ip.pop(normalize_ip_key(ip))
        self._by_email.pop(normalize_email_key(email_key))

    def state_for(self, ip: Optional[str] = None, email_key: Optional[str] = None) -> Optional[BackoffState]:
        """Helper for diagnostics - current state of one key."""
        if email_key is not None:
            return self._by_email.get(normalize_email_key(email_key))
        return self._by_ip.get(normalize_ip_key(ip))

    def _collect_stale(self, now: float):
        # Opportunistic: at most once per interval, and never blocks a writer
        if now - self._last_gc < self.GC_INTERVAL_SECONDS:
            return
        if not self._gc_lock.acquire(blocking=False):
            return
        try:
            self._last_gc = now
            cutoff = now - self.stale_after_seconds

            def is_stale(_key: str, state: BackoffState) -> bool:
                return state.last_failure_at < cutoff and state.blocked_until <= now

            removed = self._by_ip.remove_where(is_stale) + self._by_email.remove_where(is_stale)
            if removed:
                logger.info("login_backoff_gc", removed=removed)
        finally:
            self._gc_lock.release()
