from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import resolve_correlation_id
from app.core.auth import ANONYMOUS, decode_claims
from app.core.config import get_settings
from app.core.context import CrmRoute, resolve_crm_route

WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, bucket: str, capacity: int) -> int:
        """Consume one token; returns 0 when allowed, else the Retry-After seconds."""
        if capacity <= 0:
            return WINDOW_SECONDS

        now = time.monotonic()
        refill_rate = capacity / float(WINDOW_SECONDS)
        with self._lock:
            state = self._buckets.setdefault((user_id, bucket), _BucketState(float(capacity), now))
            state.tokens = min(float(capacity), state.tokens + max(0.0, now - state.last_refill) * refill_rate)
            state.last_refill = now
            if state.tokens < 1.0:
                return max(1, math.ceil((1.0 - state.tokens) / refill_rate))
            state.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


def bucket_for(route: CrmRoute) -> str:
    # stage changes and conversions get their own budget so bulk CRUD edits cannot starve them
    if route.is_lifecycle:
        return f"{route.resource}:{route.action}"
    return route.resource


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or request.method.upper() not in MUTATING_METHODS:
            return await call_next(request)

        context = getattr(request.state, "context", None)
        route = context.crm_route if context is not None else resolve_crm_route(request.url.path)
        if route is None:
            return await call_next(request)

        retry_after = _limiter.take(
            _resolve_user_id(request),
            bucket_for(route),
            settings.rate_limit_crm_mutations_per_minute,
        )
        if not retry_after:
            return await call_next(request)
        return _rate_limited(request, retry_after)


def _rate_limited(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        resolve_correlation_id(request) or request.headers.get("x-correlation-id") or str(uuid.uuid4())
    )
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": None,
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def _resolve_user_id(request: Request) -> str:
    claims = decode_claims(request)
    if claims is None or claims.get("sub") is None:
        return ANONYMOUS
    return str(claims["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
