from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from spotbook.domain.bookings.service import BookingEngine
from spotbook.domain.bookings.store import BookingStore, InMemoryBookingStore, SqlBookingStore
from spotbook.infra.db import get_session_factory
from spotbook.infra.metrics import Metrics, configure_metrics
from spotbook.infra.notifications import Notifier, build_notifier
from spotbook.infra.payments import PaymentGateway, build_payment_gateway
from spotbook.shared.clock import Clock, utc_now


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    store: BookingStore
    payment_gateway: PaymentGateway
    notifier: Notifier
    engine: BookingEngine
    metrics: Metrics


def build_store(app_settings) -> BookingStore:
    if app_settings.booking_store_backend == "memory":
        return InMemoryBookingStore()
    return SqlBookingStore(get_session_factory())


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    store: BookingStore | None = None,
    payment_gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utc_now,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    resolved_store = store or build_store(app_settings)
    resolved_gateway = payment_gateway or build_payment_gateway(app_settings)
    resolved_notifier = notifier or build_notifier(app_settings)
    return AppServices(
        store=resolved_store,
        payment_gateway=resolved_gateway,
        notifier=resolved_notifier,
        engine=BookingEngine(
            resolved_store,
            resolved_gateway,
            resolved_notifier,
            clock=clock,
            app_settings=app_settings,
        ),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
