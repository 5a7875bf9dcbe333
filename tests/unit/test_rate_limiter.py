"""Test sliding-window limits and login backoff."""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from stylebook.errors import RateLimitExceeded
from stylebook.rate_limiter import (
    BackoffLimiter,
    SlidingWindowLimiter,
    normalize_email_key,
    normalize_ip_key,
)


@pytest.fixture
def limiter(clock):
    """Create limiter with 3/minute and 5/hour on a fake clock."""
    return SlidingWindowLimiter("test", max_per_minute=3, max_per_hour=5, clock=clock)


@pytest.fixture
def backoff(clock):
    return BackoffLimiter(clock=clock)


def test_key_normalization():
    assert normalize_ip_key(None) == "unknown"
    assert normalize_ip_key("  ") == "unknown"
    assert normalize_ip_key(" 198.51.100.1 ") == "198.51.100.1"
    assert normalize_email_key(" Admin@Example.COM ") == "admin@example.com"
    assert normalize_email_key("") == "unknown"


class TestSlidingWindowLimiter:
    """Test per-minute and per-hour ceilings."""

    def test_allows_requests_within_limit(self, limiter):
        for _ in range(2):
            limiter.check_allowed("198.51.100.1")
            limiter.record_attempt("198.51.100.1")

        limiter.check_allowed("198.51.100.1")  # Should not raise

    def test_blocks_at_minute_ceiling(self, limiter):
        for _ in range(3):
            limiter.record_attempt("198.51.100.1")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_allowed("198.51.100.1")

        assert exc_info.value.message == limiter.minute_message
        assert 1 <= exc_info.value.retry_after <= 61

    def test_check_does_not_record(self, limiter):
        for _ in range(10):
            limiter.check_allowed("198.51.100.1")

        info = limiter.get_limit_info("198.51.100.1")
        assert info["minute_remaining"] == 3
        assert info["hour_remaining"] == 5

    def test_minute_window_slides(self, limiter, clock):
        for _ in range(3):
            limiter.record_attempt("198.51.100.1")

        clock.advance(60)

        limiter.check_allowed("198.51.100.1")  # Oldest attempts left the window

    def test_blocks_at_hour_ceiling(self, limiter, clock):
        for _ in range(3):
            limiter.record_attempt("198.51.100.1")
        clock.advance(61)
        for _ in range(2):
            limiter.record_attempt("198.51.100.1")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_allowed("198.51.100.1")

        assert exc_info.value.message == limiter.hour_message
        assert exc_info.value.retry_after > 60

    def test_hour_window_slides(self, limiter, clock):
        for _ in range(5):
            clock.advance(61)
            limiter.record_attempt("198.51.100.1")

        clock.advance(3600)

        limiter.check_allowed("198.51.100.1")

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.record_attempt("198.51.100.1")

        limiter.check_allowed("198.51.100.2")

    def test_blank_keys_share_unknown_bucket(self, limiter):
        for _ in range(3):
            limiter.record_attempt(None)

        with pytest.raises(RateLimitExceeded):
            limiter.check_allowed("   ")

    def test_acquire_records_only_when_admitted(self, limiter):
        for _ in range(3):
            limiter.acquire("198.51.100.1")

        with pytest.raises(RateLimitExceeded):
            limiter.acquire("198.51.100.1")

        info = limiter.get_limit_info("198.51.100.1")
        assert info["minute_remaining"] == 0
        assert info["hour_remaining"] == 2

    def test_rejects_non_positive_limits(self, clock):
        with pytest.raises(ValueError):
            SlidingWindowLimiter("bad", max_per_minute=0, max_per_hour=5, clock=clock)


class TestSlidingWindowConcurrency:
    """Concurrent use of one key must not lose or over-admit attempts."""

    def test_concurrent_records_are_all_counted(self, clock):
        limiter = SlidingWindowLimiter("load", max_per_minute=10_000, max_per_hour=10_000, clock=clock)

        def hammer():
            for _ in range(50):
                limiter.record_attempt("198.51.100.1")

        with ThreadPoolExecutor(max_workers=8) as pool:
            for _ in range(8):
                pool.submit(hammer)

        assert limiter.get_limit_info("198.51.100.1")["minute_remaining"] == 10_000 - 400

    def test_concurrent_acquire_admits_exactly_the_ceiling(self, clock):
        limiter = SlidingWindowLimiter("load", max_per_minute=10, max_per_hour=100, clock=clock)
        barrier = threading.Barrier(20)

        def attempt() -> bool:
            barrier.wait()
            try:
                limiter.acquire("198.51.100.1")
                return True
            except RateLimitExceeded:
                return False

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(lambda _: attempt(), range(20)))

        assert results.count(True) == 10


class TestSlidingWindowMemoryBounds:
    """Distinct keys are bounded in count and expire when idle."""

    def test_distinct_keys_are_capped(self, clock):
        limiter = SlidingWindowLimiter("flood", 5, 50, max_keys=100, clock=clock)

        for i in range(1000):
            limiter.record_attempt(f"10.0.{i // 256}.{i % 256}")

        assert limiter.tracked_keys() == 100

    def test_idle_keys_expire(self, clock):
        limiter = SlidingWindowLimiter("idle", 5, 50, idle_seconds=7200, clock=clock)
        limiter.record_attempt("198.51.100.1")

        clock.advance(7201)
        limiter.record_attempt("198.51.100.2")

        assert limiter.tracked_keys() == 1


class TestBackoffLimiter:
    """Test exponential lockout after failed logins."""

    @pytest.mark.parametrize("failures, expected", [
        (1, 2),
        (2, 4),
        (5, 32),
        (8, 256),
        (9, 256),
        (50, 256),
    ])
    def test_backoff_seconds(self, failures, expected):
        assert BackoffLimiter.backoff_seconds(failures) == expected

    def test_backoff_never_exceeds_cap(self):
        for failures in range(1, 100):
            assert BackoffLimiter.backoff_seconds(failures) <= BackoffLimiter.MAX_BACKOFF_SECONDS

    def test_blocked_until_tracks_consecutive_failures(self, backoff, clock):
        for k in range(1, 11):
            backoff.record_failure("198.51.100.1", "admin@example.com")

            state = backoff.state_for(ip="198.51.100.1")
            assert state.failure_count == k
            assert state.blocked_until - clock() == BackoffLimiter.backoff_seconds(k)
            assert state.last_failure_at == clock()

            clock.advance(1)

    def test_blocks_until_backoff_elapses(self, backoff, clock):
        backoff.record_failure("198.51.100.1", "admin@example.com")

        with pytest.raises(RateLimitExceeded) as exc_info:
            backoff.check_allowed("198.51.100.1", "admin@example.com")
        assert exc_info.value.retry_after == 2

        clock.advance(2)
        backoff.check_allowed("198.51.100.1", "admin@example.com")

    def test_either_key_blocks(self, backoff):
        backoff.record_failure("198.51.100.1", "admin@example.com")

        with pytest.raises(RateLimitExceeded):
            backoff.check_allowed("203.0.113.50", "admin@example.com")
        with pytest.raises(RateLimitExceeded):
            backoff.check_allowed("198.51.100.1", "other@example.com")

        backoff.check_allowed("203.0.113.50", "other@example.com")

    def test_email_keys_are_normalized(self, backoff):
        backoff.record_failure("198.51.100.1", "  Admin@Example.COM ")

        with pytest.raises(RateLimitExceeded):
            backoff.check_allowed("203.0.113.50", "admin@example.com")
        assert backoff.state_for(email_key="ADMIN@example.com").failure_count == 1

    def test_success_clears_both_keys(self, backoff):
        for _ in range(4):
            backoff.record_failure("198.51.100.1", "admin@example.com")

        backoff.record_success("198.51.100.1", "admin@example.com")

        backoff.check_allowed("198.51.100.1", "admin@example.com")
        assert backoff.state_for(ip="198.51.100.1") is None
        assert backoff.state_for(email_key="admin@example.com") is None

    def test_stale_entries_are_collected(self, clock):
        backoff = BackoffLimiter(stale_after_seconds=3600, clock=clock)
        backoff.record_failure("198.51.100.1", "old@example.com")

        clock.advance(4000)
        backoff.record_failure("198.51.100.2", "new@example.com")

        assert backoff.state_for(ip="198.51.100.1") is None
        assert backoff.state_for(ip="198.51.100.2").failure_count == 1
        assert len(backoff._by_ip) == 1
        assert len(backoff._by_email) == 1

    def test_concurrent_failures_are_all_counted(self, backoff):
        with ThreadPoolExecutor(max_workers=8) as pool:
            for _ in range(40):
                pool.submit(backoff.record_failure, "198.51.100.1", "admin@example.com")

        assert backoff.state_for(ip="198.51.100.1").failure_count == 40
        assert backoff.state_for(email_key="admin@example.com").failure_count == 40
