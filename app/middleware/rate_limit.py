"""In-memory rate limiter middleware.

Each caller gets a token bucket keyed by the account id of a valid bearer
token, otherwise by client IP.
"""

import functools
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.services.auth import decode_token

EXEMPT_PATHS = ("/health", "/docs", "/redoc", "/openapi.json")


@dataclass
class Bucket:
    tokens: float
    last: float


class RateLimiter:
    """Token bucket rate limiter.

    Once more than ``max_buckets`` callers are tracked, buckets that have
    refilled completely are dropped; a fresh bucket is identical to them.
    """

    def __init__(self, requests_per_minute: int = 60, burst: int = 10, max_buckets: int = 10_000):
        self.rate = requests_per_minute / 60.0  # tokens per second
        self.burst = burst
        self.max_buckets = max_buckets
        self._buckets: dict[str, Bucket] = {}

    def _bucket(self, key: str) -> Bucket:
        now = time.monotonic()
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_buckets:
                self.prune(now)
            bucket = self._buckets[key] = Bucket(tokens=self.burst, last=now)
        else:
            bucket.tokens = min(self.burst, bucket.tokens + (now - bucket.last) * self.rate)
            bucket.last = now
        return bucket

    def allow(self, key: str) -> bool:
        bucket = self._bucket(key)
        if bucket.tokens < 1:
            return False
        bucket.tokens -= 1
        return True

    def remaining(self, key: str) -> int:
        return max(0, int(self._bucket(key).tokens))

    def prune(self, now: Optional[float] = None) -> int:
        """Drop idle buckets that are full again; returns how many were dropped."""
        now = time.monotonic() if now is None else now
        idle = [
            key for key, b in self._buckets.items()
            if b.tokens + (now - b.last) * self.rate >= self.burst
        ]
        for key in idle:
            del self._buckets[key]
        return len(idle)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one caller's bucket, or every bucket."""
        if key:
            self._buckets.pop(key, None)
        else:
            self._buckets.clear()


def client_key(request: Request, trust_proxy: bool = False) -> str:
    """Bucket per account for valid bearer tokens, otherwise per client IP.

    ``X-Forwarded-For`` is only honoured behind a trusted proxy.
    """
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        try:
            claims = decode_token(auth[7:].strip())
        except HTTPException:
            claims = {}
        if "uid" in claims:
            return f"user:{claims['uid']}"
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for rate limiting."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 120,
        burst: int = 20,
        key_func: Optional[Callable[[Request], str]] = None,
        limiter: Optional[RateLimiter] = None,
        trust_proxy: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter or RateLimiter(requests_per_minute, burst)
        self.key_func = key_func or functools.partial(client_key, trust_proxy=trust_proxy)

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        key = self.key_func(request)
        if not self.limiter.allow(key):
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded",
                    "remaining": self.limiter.remaining(key),
                },
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(key))
        return response
