"""
Invest Gateway - Rate Limiter Tests
===================================

What:  Tests for the fixed-window limiter and its middleware.
How:   The limiter is driven with a manual clock; the middleware through an
       in-process HTTPX client.

What we test:
    ✅ max requests admitted, request max+1 rejected without counting it
    ✅ A new window opens once the old one elapses
    ✅ Clients are counted independently
    ✅ 429 envelope, Retry-After and RateLimit-* headers
    ✅ Paths outside /api are not limited
    ✅ Concurrent requests admit exactly max
"""

import asyncio

import pytest
from starlette.requests import Request

from invest_gateway.middleware.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    client_identity,
)


def _request(client=("10.0.0.1", 4000), headers=None) -> Request:
    raw_headers = [
        (name.lower().encode(), value.encode()) for name, value in (headers or {}).items()
    ]
    return Request({"type": "http", "client": client, "headers": raw_headers})


class TestFixedWindowRateLimiter:
    """Unit tests for the counter table."""

    def test_admits_up_to_max(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)

        decisions = [limiter.hit("a") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]
        assert limiter.count("a") == 3

    def test_rejects_request_over_max_without_counting(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.hit("a")
        limiter.hit("a")

        rejected = limiter.hit("a")
        limiter.hit("a")

        assert rejected.allowed is False
        assert rejected.remaining == 0
        assert limiter.count("a") == 2

    def test_new_window_after_elapse(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.hit("a")
        assert limiter.hit("a").allowed is False

        clock.advance(60)
        decision = limiter.hit("a")

        assert decision.allowed is True
        assert limiter.count("a") == 1
        assert decision.reset_after == pytest.approx(60)

    def test_window_does_not_slide(self, clock):
        """Requests late in a window do not extend it."""
        limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.hit("a")
        clock.advance(59)
        decision = limiter.hit("a")

        assert decision.reset_after == pytest.approx(1)

    def test_keys_are_independent(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)

        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is True
        assert limiter.hit("a").allowed is False
        assert limiter.count("b") == 1

    def test_sweep_drops_expired_buckets(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.hit("old")
        clock.advance(5)
        limiter.hit("fresh")
        clock.advance(6)

        assert limiter.sweep() == 1
        assert len(limiter) == 1
        assert limiter.count("fresh") == 1

    def test_reset(self, clock):
        limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.hit("a")
        limiter.hit("b")

        limiter.reset("a")
        assert limiter.hit("a").allowed is True

        limiter.reset()
        assert len(limiter) == 0

    @pytest.mark.parametrize("max_requests,window", [(0, 60), (1, 0)])
    def test_rejects_invalid_configuration(self, max_requests, window):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(max_requests=max_requests, window_seconds=window)

    def test_decision_headers_round_reset_up(self):
        decision = RateLimitDecision(allowed=True, limit=100, remaining=99, reset_after=899.2)

        assert decision.headers() == {
            "RateLimit-Limit": "100",
            "RateLimit-Remaining": "99",
            "RateLimit-Reset": "900",
        }


class TestClientIdentity:
    def test_uses_peer_address(self):
        assert client_identity(_request()) == "10.0.0.1"

    def test_ignores_forwarded_header_by_default(self):
        request = _request(headers={"X-Forwarded-For": "198.51.100.4"})
        assert client_identity(request) == "10.0.0.1"

    def test_trusted_proxy_uses_first_forwarded_hop(self):
        request = _request(headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.2"})
        assert client_identity(request, trust_proxy=True) == "198.51.100.4"

    def test_missing_client(self):
        assert client_identity(_request(client=None)) == "unknown"


class TestRateLimitMiddleware:
    """The limiter wired into the gateway."""

    @pytest.mark.asyncio
    async def test_rejects_over_budget_with_envelope(self, make_app, make_client):
        client = await make_client(make_app(rate_limit_max_requests=3))

        statuses = [(await client.get("/api/info")).status_code for _ in range(3)]
        response = await client.get("/api/info")

        assert statuses == [200, 200, 200]
        assert response.status_code == 429
        assert response.json() == {
            "error": "Too many requests",
            "message": "Too many requests from this IP, please try again later.",
            "code": "RATE_LIMIT_EXCEEDED",
        }
        assert response.headers["Retry-After"] == "60"
        assert response.headers["RateLimit-Limit"] == "3"
        assert response.headers["RateLimit-Remaining"] == "0"
        assert response.headers["RateLimit-Reset"] == "60"

    @pytest.mark.asyncio
    async def test_admitted_responses_carry_budget_headers(self, make_app, make_client):
        client = await make_client(make_app(rate_limit_max_requests=5))

        response = await client.get("/api/info")

        assert response.headers["RateLimit-Limit"] == "5"
        assert response.headers["RateLimit-Remaining"] == "4"

    @pytest.mark.asyncio
    async def test_budget_returns_after_window(self, make_app, make_client, clock):
        client = await make_client(make_app(rate_limit_max_requests=1))
        await client.get("/api/info")
        assert (await client.get("/api/info")).status_code == 429

        clock.advance(60)

        assert (await client.get("/api/info")).status_code == 200

    @pytest.mark.asyncio
    async def test_clients_do_not_share_budget(self, make_app, make_client):
        app = make_app(rate_limit_max_requests=1)
        first = await make_client(app, client_ip="203.0.113.1")
        second = await make_client(app, client_ip="203.0.113.2")

        await first.get("/api/info")

        assert (await first.get("/api/info")).status_code == 429
        assert (await second.get("/api/info")).status_code == 200

    @pytest.mark.asyncio
    async def test_rejected_request_never_reaches_handler(self, make_app, make_client, calls):
        client = await make_client(make_app(rate_limit_max_requests=1))
        await client.post("/api/auth/login", json={})

        response = await client.post("/api/auth/login", json={})

        assert response.status_code == 429
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_views_are_not_limited(self, make_app, make_client):
        client = await make_client(make_app(rate_limit_max_requests=1))

        responses = [await client.get("/login") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert "RateLimit-Limit" not in responses[0].headers

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_max(self, make_app, make_client):
        client = await make_client(make_app(rate_limit_max_requests=10))

        responses = await asyncio.gather(*(client.get("/api/info") for _ in range(25)))
        statuses = [r.status_code for r in responses]

        assert statuses.count(200) == 10
        assert statuses.count(429) == 15
