"""Redis-backed fixed-window rate limiting middleware."""

import time
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from eventportal.redis_client import get_redis, redis_key

logger = structlog.get_logger()

# Paths exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/ready", "/version"})

# Password recovery endpoints share a much tighter per-IP budget.
PASSWORD_RESET_PATHS = frozenset({"/api/v1/auth/forgot-password", "/api/v1/auth/reset-password"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per IP using Redis counters."""

    def __init__(
        self,
        app: Any,  # noqa: ANN401
        requests_per_window: int = 100,
        window_seconds: int = 60,
        reset_requests_per_window: int = 3,
        reset_window_seconds: int = 900,
    ) -> None:
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.reset_requests_per_window = reset_requests_per_window
        self.reset_window_seconds = reset_window_seconds

    def _budget(self, path: str) -> tuple[str, int, int]:
        if path in PASSWORD_RESET_PATHS:
            return "pwreset", self.reset_requests_per_window, self.reset_window_seconds
        return "all", self.requests_per_window, self.window_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Check rate limit, return 429 if exceeded."""
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        scope, limit, window_seconds = self._budget(request.url.path)
        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time()) // window_seconds
        rate_key = redis_key("ratelimit", scope, client_ip, window)

        try:
            redis = get_redis()
        except RuntimeError:
            # Redis not initialized: let the request through without rate limiting
            return await call_next(request)

        pipe = redis.pipeline()
        pipe.incr(rate_key)
        pipe.expire(rate_key, window_seconds + 1)
        results: list[Any] = await pipe.execute()

        current_count: int = results[0]
        remaining = max(0, limit - current_count)

        if current_count > limit:
            logger.warning("rate_limited", client_ip=client_ip, path=request.url.path, scope=scope)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "code": "rate_limited"},
                headers={
                    "Retry-After": str(window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(limit),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Limit"] = str(limit)
        return response
