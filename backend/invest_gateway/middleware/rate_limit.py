"""
Invest Gateway - Rate Limiting Middleware
=========================================

What:  Per-client fixed-window rate limiter for everything under /api.
How:   Each client identity owns a bucket {count, reset_at}. The first request
       after `reset_at` opens a new window with count 0. A request is admitted
       while count < max; the request that would exceed max is rejected with
       429 and the counter is left unchanged.
Who:   Third stage of the policy chain (after security headers and CORS).

Algorithm: Fixed Window Counter
    window = RATE_LIMIT_WINDOW_MS (default 15 minutes)
    max    = RATE_LIMIT_MAX_REQUESTS (default 100)

    t0        first request  → bucket(count=1, reset_at=t0 + window)
    ...       request #max   → count=max, admitted
    ...       request #max+1 → rejected (429), count stays at max
    t0+window next request   → new bucket(count=1)

Response headers (every limited request):
    RateLimit-Limit:     max
    RateLimit-Remaining: requests left in this window
    RateLimit-Reset:     seconds until the window resets
    Retry-After:         same as RateLimit-Reset (429 only)

Concurrency:
    `hit()` never awaits, so on the event loop the read-modify-write of one
    bucket cannot interleave with another request for the same key. Buckets
    are independent, so one client never waits on another.

    The table is per process. Multi-worker deployments get one budget per
    worker.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from invest_gateway.errors import ErrorNormalizer
from invest_gateway.exceptions import RateLimitExceededError
from invest_gateway.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)


def client_identity(request: Request, trust_proxy: bool = False) -> str:
    """
    The network-address-derived key used for rate limiting.

    Behind a trusted proxy the left-most X-Forwarded-For hop is the client;
    otherwise the socket peer address is.
    """
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return getattr(request.client, "host", "unknown") if request.client else "unknown"


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float

    @property
    def reset_seconds(self) -> int:
        return max(0, math.ceil(self.reset_after))

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


class FixedWindowRateLimiter:
    """
    In-memory fixed-window counter table keyed by client identity.

    Args:
        max_requests:   Requests admitted per window.
        window_seconds: Window length.
        clock:          Monotonic time source (injectable for tests).
    """

    # Sweep expired buckets every N admitted requests
    SWEEP_EVERY = 1000

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._admitted = 0

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for `key` and decide whether it is admitted."""
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_at:
            bucket = RateLimitBucket(count=0, reset_at=now + self.window_seconds)
            self._buckets[key] = bucket

        reset_after = bucket.reset_at - now
        if bucket.count >= self.max_requests:
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_after=reset_after,
            )

        bucket.count += 1
        self._admitted += 1
        if self._admitted % self.SWEEP_EVERY == 0:
            self.sweep(now)

        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - bucket.count,
            reset_after=reset_after,
        )

    def count(self, key: str) -> int:
        """Requests counted for `key` in its live window (0 once it has elapsed)."""
        bucket = self._buckets.get(key)
        if bucket is None or self._clock() >= bucket.reset_at:
            return 0
        return bucket.count

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop buckets whose window has elapsed. Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [key for key, bucket in self._buckets.items() if now >= bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Swept %d expired rate-limit buckets", len(expired))
        return len(expired)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)

    def __len__(self) -> int:
        return len(self._buckets)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Applies a `FixedWindowRateLimiter` to requests under `prefix`.

    On rejection the response is written here and no downstream stage runs.
    """

    def __init__(
        self,
        app,
        limiter: FixedWindowRateLimiter,
        normalizer: ErrorNormalizer,
        prefix: str = "/api",
        trust_proxy: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.normalizer = normalizer
        self.prefix = prefix
        self.trust_proxy = trust_proxy

    def _applies_to(self, path: str) -> bool:
        if self.prefix == "/":
            return True
        return path == self.prefix or path.startswith(self.prefix + "/")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self._applies_to(request.url.path):
            return await call_next(request)

        client_ip = client_identity(request, self.trust_proxy)
        decision = self.limiter.hit(client_ip)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds window",
                client_ip,
                decision.limit,
                int(self.limiter.window_seconds),
            )
            return self.normalizer.render(
                RateLimitExceededError(retry_after=decision.reset_seconds),
                headers=decision.headers(),
                request_id=request_id_var.get(""),
            )

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
