# tests/core/test_rate_limiter.py
"""
Unit tests for the sliding-window rate limiter.
"""
import pytest

from secure_client.core.rate_limit_config import (
    RateWindowConfig,
    get_rate_limit_message,
    get_rate_limit_tier,
    parse_rate_limit,
)
from secure_client.core.security.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(
        {
            "login": {"limit": 5, "window_ms": 60_000},
            "bookings": "2/second",
            "/admin": "1/minute",
            "global": "3/minute",
        },
        clock=clock,
    )


class TestSlidingWindow:
    """Admission decisions"""

    def test_login_burst(self, limiter):
        """Calls 1-5 are admitted, the sixth is rejected with a retry hint"""
        results = [limiter.check("login") for _ in range(5)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

        sixth = limiter.check("login")
        assert not sixth.allowed
        assert sixth.remaining == 0
        assert sixth.retry_after > 0

    def test_slot_frees_one_window_after_earliest_call(self, limiter, clock):
        """Admission resumes exactly W after the earliest admitted call"""
        start = clock.ms
        limiter.check("bookings")
        clock.advance(0.5)
        limiter.check("bookings")
        clock.advance(0.4)

        rejected = limiter.check("bookings")
        assert not rejected.allowed
        assert rejected.reset_at == start + 1000
        assert rejected.retry_after == 1

        clock.advance(0.1)
        assert limiter.check("bookings").allowed

    def test_rejected_checks_are_not_recorded(self, limiter, clock):
        """Hammering a full window does not push the reset time out"""
        for _ in range(5):
            limiter.check("login")
        first_rejection = limiter.check("login")

        clock.advance(30)
        for _ in range(10):
            assert not limiter.check("login").allowed

        clock.advance(30)
        assert limiter.check("login").allowed
        assert first_rejection.reset_at <= clock.ms

    def test_never_more_than_limit_in_window(self, limiter, clock):
        admitted = 0
        for _ in range(20):
            if limiter.check("login").allowed:
                admitted += 1
            clock.advance(1)
        assert admitted == 5

    def test_unknown_key_uses_global_window(self, limiter):
        for _ in range(3):
            assert limiter.check("unknown").allowed
        assert not limiter.check("something-else").allowed

    def test_default_global_window(self, clock):
        limiter = RateLimiter({"login": "5/minute"}, clock=clock)

        assert "global" in limiter.endpoint_keys
        assert limiter.status("anything")["limit"] == 300

    def test_keys_are_independent(self, limiter):
        for _ in range(5):
            limiter.check("login")
        assert not limiter.check("login").allowed
        assert limiter.check("bookings").allowed


class TestResolveKey:
    """URL to endpoint class mapping"""

    def test_segment_match(self, limiter):
        assert limiter.resolve_key("/auth/login") == "login"
        assert limiter.resolve_key("http://api.test/api/v1/bookings/42?x=1") == "bookings"

    def test_prefix_match(self, limiter):
        assert limiter.resolve_key("/admin/users") == "/admin"

    def test_no_partial_segment_match(self, limiter):
        assert limiter.resolve_key("/bookingsarchive") == "global"

    def test_fallback(self, limiter):
        assert limiter.resolve_key("/customers") == "global"


class TestStatusAndReset:

    def test_status_does_not_record(self, limiter):
        limiter.check("login")
        status = limiter.status("login")
        again = limiter.status("login")

        assert status == again
        assert status["current"] == 1
        assert status["remaining"] == 4
        assert status["is_limited"] is False

    def test_reset_single_key(self, limiter):
        for _ in range(5):
            limiter.check("login")
        limiter.check("bookings")

        limiter.reset("login")

        assert limiter.status("login")["current"] == 0
        assert limiter.status("bookings")["current"] == 1

    def test_reset_all(self, limiter):
        limiter.check("login")
        limiter.check("bookings")
        limiter.reset()

        assert all(s["current"] == 0 for s in limiter.statuses().values())


class TestRateLimitConfig:
    """Limit notation and tier tables"""

    def test_parse_limits_notation(self):
        assert parse_rate_limit("5/minute") == RateWindowConfig(limit=5, window_ms=60_000)
        assert parse_rate_limit("3 per 5 minutes") == RateWindowConfig(limit=3, window_ms=300_000)

    def test_parse_mapping(self):
        assert parse_rate_limit({"limit": 10, "windowMs": 1000}) == RateWindowConfig(10, 1000)

    @pytest.mark.parametrize("value", [
        {"limit": 0, "window_ms": 1000},
        {"limit": 5},
        "not a limit",
        42,
    ])
    def test_parse_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            parse_rate_limit(value)

    def test_unknown_tier_falls_back_to_default(self):
        assert get_rate_limit_tier("nope") == get_rate_limit_tier("default")

    def test_tier_is_a_copy(self):
        table = get_rate_limit_tier("default")
        table["login"] = "1/second"
        assert get_rate_limit_tier("default")["login"] == "5/minute"

    def test_messages(self):
        assert "login" in get_rate_limit_message("login")
        assert get_rate_limit_message("bookings") == get_rate_limit_message("default")
