import atexit
import logging
import os
from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

BOOKING_TRACER = "spotbook.bookings"

_CONFIGURED = False
_SQLALCHEMY_ENGINES: set[int] = set()

logger = logging.getLogger(__name__)


def _route_template(span, scope) -> None:  # noqa: ANN001
    # Booking ids and guest tokens live in raw paths; only the template is kept.
    if not span or not span.is_recording():
        return
    template = getattr(scope.get("route"), "path", None) or "/"
    span.set_attribute("http.target", template)
    host = (scope.get("server") or (None, None))[0]
    if scope.get("scheme") and host:
        span.set_attribute("http.url", f"{scope['scheme']}://{host}{template}")


def _strip_query(span, request) -> None:  # noqa: ANN001
    # Webhook URLs may carry signed query strings.
    if not span or not span.is_recording():
        return
    span.set_attribute("http.url", str(request.url.copy_with(query=None)))


def configure_tracing(app_settings) -> None:  # noqa: ANN001
    global _CONFIGURED
    if _CONFIGURED:
        return

    resource_attrs = {
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or app_settings.app_name,
        DEPLOYMENT_ENVIRONMENT: app_settings.app_env,
    }
    service_version = os.getenv("GIT_SHA")
    if service_version:
        resource_attrs[SERVICE_VERSION] = service_version

    tracer_provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint and not app_settings.testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        logger.debug("tracing_exporter_skipped")

    # Notification webhooks go out over httpx.
    HTTPXClientInstrumentor().instrument(tracer_provider=tracer_provider, request_hook=_strip_query)
    atexit.register(tracer_provider.shutdown)
    _CONFIGURED = True


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_route_template,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None or id(engine) in _SQLALCHEMY_ENGINES:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine,
        tracer_provider=trace.get_tracer_provider(),
        capture_statement=False,
    )
    _SQLALCHEMY_ENGINES.add(id(engine))


def booking_tracer(tracer_provider=None) -> Tracer:  # noqa: ANN001
    return trace.get_tracer(BOOKING_TRACER, tracer_provider=tracer_provider)


@contextmanager
def payment_span(
    tracer: Tracer,
    operation: str,
    booking_id: str,
    *,
    amount_cents: int = 0,
    currency: str | None = None,
) -> Iterator[Span]:
    """Span around one gateway call made on behalf of a booking.

    The outcome attribute is ``success`` or ``failure``; a failure also
    carries the gateway's error code when it reported one. The exception
    itself is recorded by the span and re-raised.
    """
    with tracer.start_as_current_span(f"payment.{operation}") as span:
        span.set_attribute("booking.id", booking_id)
        span.set_attribute("payment.operation", operation)
        span.set_attribute("payment.amount_cents", amount_cents)
        if currency:
            span.set_attribute("payment.currency", currency)
        try:
            yield span
        except Exception as exc:
            span.set_attribute("payment.outcome", "failure")
            # Gateway errors usually arrive wrapped in a domain error.
            code = getattr(exc, "code", None) or getattr(exc.__cause__, "code", None)
            if code:
                span.set_attribute("payment.error_code", code)
            raise
        span.set_attribute("payment.outcome", "success")


def record_booking_event(event: str, booking_id: str, status: str, version: int) -> None:
    """Attach a lifecycle event to whatever span is current (usually the HTTP request or job)."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.add_event(
        f"booking.{event}",
        {"booking.id": booking_id, "booking.status": status, "booking.version": version},
    )
