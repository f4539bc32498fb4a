import logging
import time
import uuid
from collections import defaultdict

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .request_context import set_request_id

logger = logging.getLogger("credit_engine.middleware")

# bucket -> timestamps of requests inside the current window
_rate_limit_store: dict[str, list[float]] = defaultdict(list)
_RATE_WINDOW_SEC = 60

# (bucket, path prefixes, max requests per window per client)
# Stripe webhook deliveries are absent on purpose: redelivery is how Stripe retries.
_RATE_LIMIT_RULES = (
    ("auth", ("/api/v1/auth/jwt/login", "/api/v1/auth/register"), 10),
    ("purchase", ("/api/v1/credits/purchase",), 20),
    ("subscription_action", ("/api/v1/subscriptions/me/",), 20),
)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _match_rule(path: str) -> tuple[str, int] | None:
    for bucket, prefixes, limit in _RATE_LIMIT_RULES:
        if path.startswith(prefixes):
            return bucket, limit
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limit per client IP on auth and billing-action endpoints."""

    async def dispatch(self, request: Request, call_next):
        rule = _match_rule(request.url.path)
        if rule is None:
            return await call_next(request)

        bucket, limit = rule
        key = f"{bucket}:{_client_ip(request)}"
        now = time.time()
        hits = _rate_limit_store[key]
        hits[:] = [t for t in hits if t > now - _RATE_WINDOW_SEC]
        if len(hits) >= limit:
            retry_after = max(1, int(hits[0] + _RATE_WINDOW_SEC - now))
            logger.warning("Rate limit exceeded key=%s path=%s", key, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(retry_after)},
            )
        hits.append(now)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log one access line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        request_id = (request.headers.get("X-Request-ID") or "")[:64] or uuid.uuid4().hex
        request.state.request_id = request_id
        set_request_id(request_id)

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if request.url.path != "/health":
            logger.info(
                "%s %s -> %d in %.1fms",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                extra={"request_id": request_id},
            )
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
        return response
