from datetime import timedelta

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from spotbook.domain.bookings.service import BookingEngine
from spotbook.domain.errors import PaymentCaptureFailed
from spotbook.infra.tracing import booking_tracer
from spotbook.settings import settings


@pytest.fixture()
def spans():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    yield exporter, booking_tracer(provider)
    provider.shutdown()


@pytest.mark.anyio
async def test_payment_calls_are_traced_per_booking(store, gateway, notifier, clock, make_terms, spans):
    exporter, tracer = spans
    engine = BookingEngine(store, gateway, notifier, clock=clock, app_settings=settings, tracer=tracer)

    booking = (await engine.create(make_terms(instant_book=True))).booking

    finished = {span.name: span for span in exporter.get_finished_spans()}
    assert {"payment.authorize", "payment.capture"} <= set(finished)
    capture = finished["payment.capture"].attributes
    assert capture["booking.id"] == booking.booking_id
    assert capture["payment.amount_cents"] == 5060
    assert capture["payment.currency"] == settings.pricing_currency
    assert capture["payment.outcome"] == "success"


@pytest.mark.anyio
async def test_failed_payment_spans_carry_the_gateway_code(store, gateway, notifier, clock, make_terms, spans):
    exporter, tracer = spans
    engine = BookingEngine(store, gateway, notifier, clock=clock, app_settings=settings, tracer=tracer)
    booking = (await engine.create(make_terms(instant_book=True))).booking
    exporter.clear()
    gateway.fail_charges = True

    with pytest.raises(PaymentCaptureFailed):
        await engine.extend(booking.booking_id, booking.end_at + timedelta(hours=1))

    (charge,) = [span for span in exporter.get_finished_spans() if span.name == "payment.charge"]
    assert charge.attributes["payment.outcome"] == "failure"
    assert charge.attributes["payment.error_code"]
    assert not charge.status.is_ok
