from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from bizsuite.api.routes import router as api_router
from bizsuite.core.config import get_settings
from bizsuite.core.context import RequestContextMiddleware
from bizsuite.core.events import DomainEvent, event_bus
from bizsuite.logging import configure_logging
from bizsuite.middleware.correlation_id import CorrelationIdMiddleware
from bizsuite.middleware.request_logging import RequestLoggingMiddleware
from bizsuite.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("bizsuite.lifecycle")
_subscriptions_registered = False

_lifecycle_event_types = [
    "crm.lead.converted",
    "crm.opportunity.totals_recalculated",
    "crm.opportunity.lost",
    "crm.contract.signed",
    "crm.contract.cancelled",
    "crm.contract.fulfilment_changed",
]


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_lifecycle_event(event: DomainEvent) -> None:
    envelope = event.payload
    logger.info(
        "crm.lifecycle_event",
        extra={
            "event_name": event.name,
            "org_id": envelope.get("org_id"),
            "user_id": envelope.get("actor_user_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _lifecycle_event_types:
            event_bus.subscribe(event_name, _on_crm_lifecycle_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("bizsuite-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
