from fastapi import HTTPException, Request

from spotbook.domain.bookings.service import BookingEngine
from spotbook.services import AppServices, resolve_services


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def get_engine(request: Request) -> BookingEngine:
    return get_services(request).engine
