from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

CRM_PREFIX = "/api/crm"

# trailing path segments that drive the opportunity lifecycle rather than plain CRUD
LIFECYCLE_ACTIONS = frozenset({"stage", "promote", "convert", "link", "bulk-link"})


@dataclass(frozen=True)
class CrmRoute:
    resource: str
    action: str | None = None

    @property
    def is_lifecycle(self) -> bool:
        return self.action in LIFECYCLE_ACTIONS


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    client_host: str | None
    user_agent: str | None
    crm_route: CrmRoute | None = None


def resolve_crm_route(path: str) -> CrmRoute | None:
    if path != CRM_PREFIX and not path.startswith(CRM_PREFIX + "/"):
        return None
    parts = [part for part in path[len(CRM_PREFIX):].split("/") if part]
    if not parts:
        return CrmRoute(resource="crm")
    action = parts[-1] if len(parts) > 1 and parts[-1] in LIFECYCLE_ACTIONS else None
    return CrmRoute(resource=parts[0], action=action)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            client_host=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            crm_route=resolve_crm_route(request.url.path),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
