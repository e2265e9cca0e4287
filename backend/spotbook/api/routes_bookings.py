import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status

from spotbook.api.guest_tokens import issue_guest_token, verify_guest_token
from spotbook.dependencies import get_engine
from spotbook.domain.bookings import schemas as booking_schemas
from spotbook.domain.bookings.service import BookingEffect, BookingEngine
from spotbook.domain.bookings.statuses import ActorRole, BookingStatus
from spotbook.domain.errors import DomainError, InvalidWindow
from spotbook.domain.pricing.policy import hours_between, quote_booking
from spotbook.infra.metrics import metrics

router = APIRouter()
logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
GUEST_TOKEN_HEADER = "X-Guest-Token"

PARTIES = (ActorRole.host, ActorRole.renter, ActorRole.guest)
DRIVERS = (ActorRole.renter, ActorRole.guest)


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None)


def _caller_roles(request: Request, booking: booking_schemas.BookingRecord) -> set[ActorRole]:
    roles: set[ActorRole] = set()
    user_id = request.headers.get(USER_HEADER)
    if user_id:
        if user_id == booking.host_id:
            roles.add(ActorRole.host)
        if booking.renter_id and user_id == booking.renter_id:
            roles.add(ActorRole.renter)
    token = request.headers.get(GUEST_TOKEN_HEADER)
    if token and booking.is_guest:
        verify_guest_token(token, booking.booking_id, app_settings=_app_settings(request))
        roles.add(ActorRole.guest)
    return roles


def _require_party(
    request: Request, booking: booking_schemas.BookingRecord, *allowed: ActorRole
) -> booking_schemas.Actor:
    roles = _caller_roles(request, booking)
    for role in allowed:
        if role in roles:
            user_id = booking.host_id if role is ActorRole.host else booking.recipient_id
            return booking_schemas.Actor(role=role, user_id=user_id)
    if not request.headers.get(USER_HEADER) and not request.headers.get(GUEST_TOKEN_HEADER):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to act on this booking")


def _booking_response(engine: BookingEngine, record: booking_schemas.BookingRecord) -> booking_schemas.BookingResponse:
    overstay_charge = record.overstay_charge_cents
    if record.status is BookingStatus.active:
        overstay_charge += engine.current_overstay_charge(record)
    deadline = engine.approval_deadline(record) if record.status is BookingStatus.held else None
    return booking_schemas.BookingResponse.from_record(
        record, overstay_charge_cents=overstay_charge, approval_deadline=deadline
    )


def _effect_response(
    engine: BookingEngine, effect: BookingEffect, *, guest_token: str | None = None
) -> booking_schemas.BookingEffectResponse:
    return booking_schemas.BookingEffectResponse(
        booking=_booking_response(engine, effect.booking),
        effect=effect.kind,
        amount_cents=effect.amount_cents,
        challenge_ref=effect.challenge_ref,
        attempt_id=effect.attempt_id,
        guest_token=guest_token,
    )


async def _perform(operation: str, call: Callable[[], Awaitable[BookingEffect]]) -> BookingEffect:
    try:
        return await call()
    except DomainError as exc:
        metrics.record_booking_error(operation, type(exc).__name__)
        logger.info(
            "booking_operation_rejected",
            extra={"extra": {"operation": operation, "error": type(exc).__name__, "status_code": exc.status_code}},
        )
        raise


async def _act(
    request: Request,
    engine: BookingEngine,
    booking_id: str,
    operation: str,
    allowed: tuple[ActorRole, ...],
    call: Callable[[booking_schemas.Actor], Awaitable[BookingEffect]],
) -> booking_schemas.BookingEffectResponse:
    booking = await _perform(operation, lambda: engine.get(booking_id))
    actor = _require_party(request, booking, *allowed)
    effect = await _perform(operation, lambda: call(actor))
    return _effect_response(engine, effect)


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingEffectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    request: Request,
    payload: booking_schemas.BookingCreateRequest,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    """Open a booking on the terms the listing service quoted.

    This API sits behind the marketplace gateway, which authenticates the
    caller into ``X-User-Id`` and copies the spot's ownership and pricing
    terms from the listing before forwarding. Those fields are
    taken as given here; the service must not be exposed to drivers directly.
    """
    terms = booking_schemas.BookingTerms(
        spot_id=payload.spot_id,
        host_id=payload.host_id,
        instant_book=payload.instant_book,
        hourly_rate_cents=payload.hourly_rate_cents,
        ev_premium_cents_per_hour=payload.ev_premium_cents_per_hour,
        will_use_ev_charging=payload.will_use_ev_charging,
        start_at=payload.start_at,
        end_at=payload.end_at,
        payer_ref=payload.payer_ref,
        renter_id=request.headers.get(USER_HEADER) or None,
        guest=payload.guest,
    )
    effect = await _perform("create", lambda: engine.create(terms))
    guest_token = None
    if effect.booking.is_guest:
        guest_token = issue_guest_token(effect.booking.booking_id, app_settings=_app_settings(request))
    return _effect_response(engine, effect, guest_token=guest_token)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    request: Request,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingResponse:
    booking = await _perform("get", lambda: engine.get(booking_id))
    _require_party(request, booking, *PARTIES)
    return _booking_response(engine, booking)


@router.post("/v1/bookings/{booking_id}/approve", response_model=booking_schemas.BookingEffectResponse)
async def approve_booking(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(request, engine, booking_id, "approve", (ActorRole.host,), lambda actor: engine.approve(booking_id))


@router.post("/v1/bookings/{booking_id}/decline", response_model=booking_schemas.BookingEffectResponse)
async def decline_booking(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(request, engine, booking_id, "decline", (ActorRole.host,), lambda actor: engine.decline(booking_id))


@router.post("/v1/bookings/{booking_id}/expire", response_model=booking_schemas.BookingEffectResponse)
async def expire_booking(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(request, engine, booking_id, "expire", PARTIES, lambda actor: engine.expire(booking_id))


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingEffectResponse)
async def cancel_booking(
    booking_id: str,
    request: Request,
    payload: booking_schemas.CancelRequest | None = None,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    reason = payload.reason if payload else None
    return await _act(
        request, engine, booking_id, "cancel", PARTIES, lambda actor: engine.cancel(booking_id, actor, reason)
    )


@router.post("/v1/bookings/{booking_id}/extend", response_model=booking_schemas.BookingEffectResponse)
async def extend_booking(
    booking_id: str,
    payload: booking_schemas.ExtendRequest,
    request: Request,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request, engine, booking_id, "extend", DRIVERS, lambda actor: engine.extend(booking_id, payload.new_end_at)
    )


@router.post(
    "/v1/bookings/{booking_id}/extensions/{attempt_id}/finalize",
    response_model=booking_schemas.BookingEffectResponse,
)
async def finalize_extension(
    booking_id: str,
    attempt_id: str,
    request: Request,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request,
        engine,
        booking_id,
        "finalize_extension",
        DRIVERS,
        lambda actor: engine.finalize_extension(booking_id, attempt_id),
    )


@router.post("/v1/bookings/{booking_id}/modify", response_model=booking_schemas.BookingEffectResponse)
async def modify_booking(
    booking_id: str,
    payload: booking_schemas.ModifyRequest,
    request: Request,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request,
        engine,
        booking_id,
        "modify",
        DRIVERS,
        lambda actor: engine.modify(booking_id, payload.new_start_at, payload.new_end_at),
    )


@router.post("/v1/bookings/{booking_id}/confirm-departure", response_model=booking_schemas.BookingEffectResponse)
async def confirm_departure(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request, engine, booking_id, "confirm_departure", PARTIES, lambda actor: engine.confirm_departure(booking_id)
    )


@router.post("/v1/bookings/{booking_id}/overstay/detect", response_model=booking_schemas.BookingEffectResponse)
async def detect_overstay(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request, engine, booking_id, "detect_overstay", (ActorRole.host,), lambda actor: engine.detect_overstay(booking_id)
    )


@router.post("/v1/bookings/{booking_id}/overstay/action", response_model=booking_schemas.BookingEffectResponse)
async def set_overstay_action(
    booking_id: str,
    payload: booking_schemas.OverstayActionRequest,
    request: Request,
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request,
        engine,
        booking_id,
        "overstay_action",
        (ActorRole.host,),
        lambda actor: engine.set_overstay_action(booking_id, payload.action),
    )


@router.post("/v1/bookings/{booking_id}/overstay/cancel-tow", response_model=booking_schemas.BookingEffectResponse)
async def cancel_tow_request(
    booking_id: str, request: Request, engine: BookingEngine = Depends(get_engine)
) -> booking_schemas.BookingEffectResponse:
    return await _act(
        request, engine, booking_id, "cancel_tow", (ActorRole.host,), lambda actor: engine.cancel_tow_request(booking_id)
    )


@router.get("/v1/pricing/quote", response_model=booking_schemas.QuoteResponse)
async def get_quote(
    query: booking_schemas.QuoteQuery = Depends(),
    engine: BookingEngine = Depends(get_engine),
) -> booking_schemas.QuoteResponse:
    if query.end_at <= query.start_at:
        raise InvalidWindow(detail="end_at must be after start_at")
    quote = quote_booking(
        query.hourly_rate_cents,
        hours_between(query.start_at, query.end_at),
        ev_premium_cents_per_hour=query.ev_premium_cents_per_hour,
        will_use_ev_charging=query.will_use_ev_charging,
        rates=engine.rates,
    )
    return booking_schemas.QuoteResponse(
        hours=quote.hours,
        driver_hourly_rate_cents=quote.driver_hourly_rate_cents,
        subtotal_cents=quote.subtotal_cents,
        service_fee_cents=quote.service_fee_cents,
        ev_charging_fee_cents=quote.ev_charging_fee_cents,
        total_cents=quote.total_cents,
    )
