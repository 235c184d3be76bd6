from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import correlation_scope

# ids are echoed into headers, logs and event envelopes
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")
_INCOMING_HEADERS = ("x-correlation-id", "x-request-id")


def _resolve_correlation_id(request: Request) -> str:
    for header in _INCOMING_HEADERS:
        incoming = request.headers.get(header, "").strip()
        if incoming and _ACCEPTED_ID.match(incoming):
            return incoming
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request)
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers["x-correlation-id"] = correlation_id
        return response
