from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from foodcrm.api.routes import router as api_router
from foodcrm.core.config import get_settings
from foodcrm.core.context import RequestContextMiddleware
from foodcrm.core.events import InternalEvent, event_bus
from foodcrm.logging import configure_logging
from foodcrm.middleware.correlation_id import CorrelationIdMiddleware
from foodcrm.middleware.rate_limit import MutationRateLimitMiddleware
from foodcrm.middleware.request_logging import RequestLoggingMiddleware
from foodcrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("foodcrm.lifecycle")
_subscriptions_registered = False

_logged_event_patterns = [
    "crm.opportunity.closed_*",
    "crm.*.merged",
    "authz.role_*",
    "auth.user.registered",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "domain_event",
        extra={"event_name": event.name, "user_id": payload.get("actor_user_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for pattern in _logged_event_patterns:
            event_bus.subscribe(pattern, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("foodcrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
