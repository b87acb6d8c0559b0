"""Tests for the per-IP token bucket limiter and client IP resolution."""

import threading
import time

import pytest
from starlette.datastructures import Headers

from authgate.service.rate_limit import IPRateLimiter, TokenBucket, resolve_client_ip, strip_port


class TestTokenBucket:
    def test_burst_then_reject(self, fake_monotonic):
        bucket = TokenBucket(rate=1, burst=3, clock=fake_monotonic)

        assert [bucket.allow() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self, fake_monotonic):
        bucket = TokenBucket(rate=2, burst=2, clock=fake_monotonic)
        bucket.allow()
        bucket.allow()
        assert not bucket.allow()

        fake_monotonic.advance(0.5)
        assert bucket.allow()
        assert not bucket.allow()

    def test_refill_caps_at_burst(self, fake_monotonic):
        bucket = TokenBucket(rate=100, burst=5, clock=fake_monotonic)
        fake_monotonic.advance(60)

        assert bucket.tokens == 5

    @pytest.mark.parametrize("rate, burst", [(0, 1), (-1, 5), (1, 0)])
    def test_invalid_parameters(self, rate, burst):
        with pytest.raises(ValueError):
            TokenBucket(rate=rate, burst=burst)


class TestIPRateLimiter:
    def test_burst_plus_one_is_rejected(self, fake_monotonic):
        limiter = IPRateLimiter(rps=500, burst=20, clock=fake_monotonic)

        results = [limiter.allow("203.0.113.1") for _ in range(21)]

        assert results[:20] == [True] * 20
        assert results[20] is False

    def test_ips_have_independent_buckets(self, fake_monotonic):
        limiter = IPRateLimiter(rps=1, burst=2, clock=fake_monotonic)
        limiter.allow("10.0.0.1")
        limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")

        assert limiter.allow("10.0.0.2")
        assert limiter.allow("10.0.0.2")
        assert len(limiter) == 2

    def test_get_limiter_reuses_bucket(self, fake_monotonic):
        limiter = IPRateLimiter(rps=1, burst=2, clock=fake_monotonic)

        assert limiter.get_limiter("10.0.0.1") is limiter.get_limiter("10.0.0.1")

    def test_concurrent_creation_yields_one_bucket(self):
        limiter = IPRateLimiter(rps=1, burst=1)
        barrier = threading.Barrier(16)
        seen = []

        def worker():
            barrier.wait()
            seen.append(limiter.get_limiter("198.51.100.7"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(bucket) for bucket in seen}) == 1
        assert len(limiter) == 1

    def test_sweep_evicts_idle_entries(self, fake_monotonic):
        limiter = IPRateLimiter(rps=1, burst=1, idle_seconds=3600, clock=fake_monotonic)
        limiter.allow("10.0.0.1")
        fake_monotonic.advance(1800)
        limiter.allow("10.0.0.2")
        fake_monotonic.advance(1801)

        removed = limiter.sweep()

        assert removed == 1
        assert len(limiter) == 1

    def test_last_seen_refreshes_on_lookup(self, fake_monotonic):
        limiter = IPRateLimiter(rps=1, burst=1, idle_seconds=100, clock=fake_monotonic)
        limiter.allow("10.0.0.1")
        fake_monotonic.advance(90)
        limiter.get_limiter("10.0.0.1")
        fake_monotonic.advance(90)

        assert limiter.sweep() == 0

    def test_swept_ip_starts_with_full_bucket(self, fake_monotonic):
        limiter = IPRateLimiter(rps=0.001, burst=1, idle_seconds=10, clock=fake_monotonic)
        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")

        fake_monotonic.advance(11)
        limiter.sweep()

        assert limiter.allow("10.0.0.1")

    def test_start_and_stop_sweeper(self):
        limiter = IPRateLimiter(rps=1, burst=1, idle_seconds=3600)
        limiter.start()
        assert limiter.running

        started = time.monotonic()
        limiter.stop()

        assert not limiter.running
        # Stop must not wait out the sweep interval
        assert time.monotonic() - started < 2

    def test_sweeper_thread_runs_sweeps(self):
        limiter = IPRateLimiter(rps=1, burst=1, idle_seconds=0.05)
        limiter.allow("10.0.0.1")
        limiter.start()
        try:
            deadline = time.monotonic() + 2
            while len(limiter) and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            limiter.stop()

        assert len(limiter) == 0


class TestResolveClientIP:
    def test_forwarded_for_first_entry(self):
        headers = {"X-Forwarded-For": "203.0.113.1, 192.168.1.1"}
        assert resolve_client_ip(headers, "10.0.0.9:5555") == "203.0.113.1"

    def test_repeated_forwarded_for_takes_first_line(self):
        headers = Headers(
            raw=[
                (b"x-forwarded-for", b"203.0.113.1"),
                (b"x-forwarded-for", b"198.51.100.9"),
            ]
        )
        assert resolve_client_ip(headers, "10.0.0.9:5555") == "203.0.113.1"

    def test_real_ip_alone(self):
        assert resolve_client_ip({"X-Real-IP": "203.0.113.2"}, "10.0.0.9:5555") == "203.0.113.2"

    def test_forwarded_for_wins_over_real_ip(self):
        headers = {"X-Forwarded-For": "203.0.113.1", "X-Real-IP": "203.0.113.2"}
        assert resolve_client_ip(headers, "10.0.0.9:5555") == "203.0.113.1"

    def test_falls_back_to_remote_address(self):
        assert resolve_client_ip({}, "10.0.0.9:5555") == "10.0.0.9"

    def test_malformed_headers_are_skipped(self):
        headers = {"X-Forwarded-For": "not-an-ip, 203.0.113.1", "X-Real-IP": "203.0.113.2"}
        assert resolve_client_ip(headers, "10.0.0.9:5555") == "203.0.113.2"

        headers = {"X-Forwarded-For": "garbage", "X-Real-IP": "also garbage"}
        assert resolve_client_ip(headers, "10.0.0.9:5555") == "10.0.0.9"

    def test_ipv6_forwarded_for(self):
        assert resolve_client_ip({"x-forwarded-for": "2001:db8::1"}, None) == "2001:db8::1"

    @pytest.mark.parametrize(
        "addr, expected",
        [
            ("10.0.0.1:8080", "10.0.0.1"),
            ("10.0.0.1", "10.0.0.1"),
            ("[2001:db8::1]:443", "2001:db8::1"),
            ("2001:db8::1", "2001:db8::1"),
            ("", ""),
        ],
    )
    def test_strip_port(self, addr, expected):
        assert strip_port(addr) == expected
