from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.events import CRM_EVENT_TYPES
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    payload = event.domain_payload
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "opportunity_id": payload.get("opportunity_id"),
            "lead_id": payload.get("lead_id"),
            "client_id": payload.get("client_id"),
            "to_stage": payload.get("to_stage") or payload.get("stage"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # subscribe() ignores handlers that are already registered
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe_many(CRM_EVENT_TYPES, _on_crm_domain_event)
    event_bus.publish("system.started", {"service": settings.otel_service_name})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(settings.otel_service_name, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
