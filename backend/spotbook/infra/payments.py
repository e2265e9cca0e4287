"""Payment gateway adapters.

Amounts are integer cents. ``payer_ref`` is ``"<customer>:<payment_method>"``
for Stripe; the fake gateway treats it as an opaque string.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import anyio

from spotbook.infra.stripe_resilience import stripe_circuit
from spotbook.settings import settings
from spotbook.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

CHARGE_SUCCEEDED = "succeeded"
CHARGE_REQUIRES_ACTION = "requires_action"

INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
AUTHENTICATION_STATUSES = frozenset({"requires_action", "requires_confirmation", "requires_payment_method"})
# Intent states that may still turn into a successful charge.
PENDING_STATUSES = AUTHENTICATION_STATUSES | {"processing"}


class PaymentGatewayError(Exception):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class PaymentDeclined(PaymentGatewayError):
    pass


class PaymentProviderUnavailable(PaymentGatewayError):
    pass


@dataclass(frozen=True)
class ChargeResult:
    intent_ref: str
    status: str
    challenge_ref: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.status == CHARGE_REQUIRES_ACTION


class PaymentGateway(Protocol):
    async def authorize(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> str: ...

    async def capture(self, intent_ref: str, *, idempotency_key: str) -> None: ...

    async def release(self, intent_ref: str, *, idempotency_key: str) -> None: ...

    async def refund(self, intent_ref: str, amount_cents: int, *, idempotency_key: str) -> str: ...

    async def charge_immediate(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> ChargeResult: ...

    async def intent_status(self, intent_ref: str) -> str: ...


def _split_payer_ref(payer_ref: str) -> tuple[str, str | None]:
    customer, _, payment_method = payer_ref.partition(":")
    return customer, payment_method or None


class StripePaymentGateway:
    def __init__(
        self,
        *,
        secret_key: str | None = None,
        currency: str | None = None,
        stripe_sdk: Any | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.currency = (currency or settings.pricing_currency).lower()
        self.circuit = circuit or stripe_circuit

    async def _call(self, operation: str, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise PaymentProviderUnavailable("Stripe secret key not configured", code="not_configured")
        kwargs.setdefault("api_key", self.secret_key)

        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        try:
            return await self.circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))
        except CircuitBreakerOpenError as exc:
            logger.warning("stripe_circuit_open", extra={"extra": {"operation": operation}})
            raise PaymentProviderUnavailable(str(exc), code="circuit_open") from exc
        except self.stripe.CardError as exc:
            raise PaymentDeclined(exc.user_message or str(exc), code=exc.code) from exc
        except self.stripe.StripeError as exc:
            logger.warning(
                "stripe_call_failed",
                extra={"extra": {"operation": operation, "error": type(exc).__name__, "code": exc.code}},
            )
            raise PaymentProviderUnavailable(str(exc), code=exc.code) from exc
        except TimeoutError as exc:
            raise PaymentProviderUnavailable("Stripe request timed out", code="timeout") from exc

    def _intent_payload(self, amount_cents: int, payer_ref: str, metadata: dict[str, str] | None) -> dict:
        customer, payment_method = _split_payer_ref(payer_ref)
        payload: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "customer": customer,
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
        }
        if payment_method:
            payload["payment_method"] = payment_method
        return payload

    async def authorize(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> str:
        payload = self._intent_payload(amount_cents, payer_ref, metadata)
        payload["capture_method"] = "manual"
        intent = await self._call(
            "authorize", self.stripe.PaymentIntent.create, idempotency_key=idempotency_key, **payload
        )
        if intent.status not in {"requires_capture", "succeeded"}:
            raise PaymentDeclined(f"Authorization ended in status {intent.status}", code=intent.status)
        return intent.id

    async def capture(self, intent_ref: str, *, idempotency_key: str) -> None:
        await self._call(
            "capture", self.stripe.PaymentIntent.capture, intent_ref, idempotency_key=idempotency_key
        )

    async def release(self, intent_ref: str, *, idempotency_key: str) -> None:
        await self._call(
            "release", self.stripe.PaymentIntent.cancel, intent_ref, idempotency_key=idempotency_key
        )

    async def refund(self, intent_ref: str, amount_cents: int, *, idempotency_key: str) -> str:
        refund = await self._call(
            "refund",
            self.stripe.Refund.create,
            payment_intent=intent_ref,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )
        return refund.id

    async def charge_immediate(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> ChargeResult:
        payload = self._intent_payload(amount_cents, payer_ref, metadata)
        try:
            intent = await self._call(
                "charge", self.stripe.PaymentIntent.create, idempotency_key=idempotency_key, **payload
            )
        except PaymentDeclined as exc:
            # Off-session charges that need 3DS come back as a card error
            # carrying the intent the customer has to authenticate.
            cause = exc.__cause__
            if exc.code == "authentication_required" and cause is not None:
                intent = getattr(getattr(cause, "error", None), "payment_intent", None)
                if intent is not None:
                    return ChargeResult(
                        intent_ref=intent["id"],
                        status=CHARGE_REQUIRES_ACTION,
                        challenge_ref=intent.get("client_secret"),
                    )
            raise
        if intent.status == "succeeded":
            return ChargeResult(intent_ref=intent.id, status=CHARGE_SUCCEEDED)
        if intent.status in AUTHENTICATION_STATUSES:
            return ChargeResult(
                intent_ref=intent.id, status=CHARGE_REQUIRES_ACTION, challenge_ref=intent.client_secret
            )
        raise PaymentDeclined(f"Charge ended in status {intent.status}", code=intent.status)

    async def intent_status(self, intent_ref: str) -> str:
        intent = await self._call("retrieve", self.stripe.PaymentIntent.retrieve, intent_ref)
        return intent.status


@dataclass
class FakeIntent:
    intent_ref: str
    amount_cents: int
    payer_ref: str
    status: str
    refunded_cents: int = 0


@dataclass
class FakeCall:
    operation: str
    intent_ref: str | None
    amount_cents: int | None
    idempotency_key: str | None


@dataclass
class FakePaymentGateway:
    """In-process gateway for tests and ``PAYMENT_MODE=fake``.

    Every call is appended to ``calls``; a repeated idempotency key returns the
    first result without moving money again, like Stripe.
    """

    decline_authorizations: bool = False
    fail_captures: bool = False
    fail_releases: bool = False
    fail_refunds: bool = False
    fail_charges: bool = False
    charges_require_action: bool = False
    intents: dict[str, FakeIntent] = field(default_factory=dict)
    calls: list[FakeCall] = field(default_factory=list)
    _results: dict[str, Any] = field(default_factory=dict)

    def calls_for(self, operation: str) -> list[FakeCall]:
        return [call for call in self.calls if call.operation == operation]

    def complete_authentication(self, intent_ref: str) -> None:
        self.intents[intent_ref].status = "succeeded"

    def _new_intent(self, amount_cents: int, payer_ref: str, status: str) -> FakeIntent:
        intent = FakeIntent(
            intent_ref=f"pi_fake_{uuid.uuid4().hex[:16]}",
            amount_cents=amount_cents,
            payer_ref=payer_ref,
            status=status,
        )
        self.intents[intent.intent_ref] = intent
        return intent

    async def _record(
        self, operation: str, idempotency_key: str | None, intent_ref: str | None = None, amount_cents: int | None = None
    ) -> Any:
        self.calls.append(
            FakeCall(
                operation=operation,
                intent_ref=intent_ref,
                amount_cents=amount_cents,
                idempotency_key=idempotency_key,
            )
        )
        # Yield so concurrent callers interleave the way real network calls do.
        await anyio.sleep(0)
        if idempotency_key is not None:
            return self._results.get(idempotency_key)
        return None

    async def authorize(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> str:
        previous = await self._record("authorize", idempotency_key, amount_cents=amount_cents)
        if previous is not None:
            return previous
        if self.decline_authorizations:
            raise PaymentDeclined("Your card was declined.", code="card_declined")
        intent = self._new_intent(amount_cents, payer_ref, "requires_capture")
        self._results[idempotency_key] = intent.intent_ref
        return intent.intent_ref

    async def capture(self, intent_ref: str, *, idempotency_key: str) -> None:
        previous = await self._record("capture", idempotency_key, intent_ref=intent_ref)
        if previous is not None:
            return None
        if self.fail_captures:
            raise PaymentProviderUnavailable("capture failed", code="capture_failed")
        intent = self.intents.get(intent_ref)
        if intent is None or intent.status != "requires_capture":
            raise PaymentDeclined(f"Intent {intent_ref} cannot be captured", code="invalid_state")
        intent.status = "succeeded"
        self._results[idempotency_key] = True
        return None

    async def release(self, intent_ref: str, *, idempotency_key: str) -> None:
        previous = await self._record("release", idempotency_key, intent_ref=intent_ref)
        if previous is not None:
            return None
        if self.fail_releases:
            raise PaymentProviderUnavailable("release failed", code="release_failed")
        intent = self.intents.get(intent_ref)
        if intent is not None:
            intent.status = "canceled"
        self._results[idempotency_key] = True
        return None

    async def refund(self, intent_ref: str, amount_cents: int, *, idempotency_key: str) -> str:
        previous = await self._record("refund", idempotency_key, intent_ref=intent_ref, amount_cents=amount_cents)
        if previous is not None:
            return previous
        if self.fail_refunds:
            raise PaymentProviderUnavailable("refund failed", code="refund_failed")
        intent = self.intents.get(intent_ref)
        if intent is None or intent.status != "succeeded":
            raise PaymentDeclined(f"Intent {intent_ref} has no captured funds", code="invalid_state")
        if intent.refunded_cents + amount_cents > intent.amount_cents:
            raise PaymentDeclined("Refund exceeds captured amount", code="amount_too_large")
        intent.refunded_cents += amount_cents
        refund_ref = f"re_fake_{uuid.uuid4().hex[:16]}"
        self._results[idempotency_key] = refund_ref
        return refund_ref

    async def charge_immediate(
        self, amount_cents: int, payer_ref: str, *, idempotency_key: str, metadata: dict[str, str] | None = None
    ) -> ChargeResult:
        previous = await self._record("charge", idempotency_key, amount_cents=amount_cents)
        if previous is not None:
            return previous
        if self.fail_charges:
            raise PaymentDeclined("Your card was declined.", code="card_declined")
        if self.charges_require_action:
            intent = self._new_intent(amount_cents, payer_ref, "requires_action")
            result = ChargeResult(
                intent_ref=intent.intent_ref,
                status=CHARGE_REQUIRES_ACTION,
                challenge_ref=f"{intent.intent_ref}_secret",
            )
        else:
            intent = self._new_intent(amount_cents, payer_ref, "succeeded")
            result = ChargeResult(intent_ref=intent.intent_ref, status=CHARGE_SUCCEEDED)
        self._results[idempotency_key] = result
        return result

    async def intent_status(self, intent_ref: str) -> str:
        await self._record("retrieve", None, intent_ref=intent_ref)
        intent = self.intents.get(intent_ref)
        if intent is None:
            raise PaymentDeclined(f"Unknown intent {intent_ref}", code="resource_missing")
        return intent.status


def build_payment_gateway(app_settings=None) -> PaymentGateway:
    source = app_settings or settings
    if source.payment_mode == "fake":
        return FakePaymentGateway()
    return StripePaymentGateway(secret_key=source.stripe_secret_key, currency=source.pricing_currency)
