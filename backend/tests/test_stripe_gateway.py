from types import SimpleNamespace

import pytest

from spotbook.infra.payments import (
    PaymentDeclined,
    PaymentProviderUnavailable,
    StripePaymentGateway,
)
from spotbook.shared.circuit_breaker import CircuitBreaker


class FakeStripeError(Exception):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.user_message = message
        self.error = None


class FakeCardError(FakeStripeError):
    pass


class FakeStripe:
    StripeError = FakeStripeError
    CardError = FakeCardError

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.next_status = "requires_capture"
        self.raise_error: Exception | None = None
        self.PaymentIntent = SimpleNamespace(
            create=self._recorder("PaymentIntent.create"),
            capture=self._recorder("PaymentIntent.capture"),
            cancel=self._recorder("PaymentIntent.cancel"),
            retrieve=self._recorder("PaymentIntent.retrieve"),
        )
        self.Refund = SimpleNamespace(create=self._recorder("Refund.create", prefix="re"))

    def _recorder(self, name: str, prefix: str = "pi"):
        def _call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if self.raise_error is not None:
                raise self.raise_error
            return SimpleNamespace(id=f"{prefix}_123", status=self.next_status, client_secret="pi_123_secret_abc")

        return _call


def _gateway(sdk: FakeStripe, *, secret_key: str | None = "sk_test_123", ignored=()) -> StripePaymentGateway:
    circuit = CircuitBreaker(name="stripe-test", failure_threshold=2, recovery_time=60, ignored_exceptions=ignored)
    return StripePaymentGateway(secret_key=secret_key, currency="CAD", stripe_sdk=sdk, circuit=circuit)


@pytest.mark.anyio
async def test_authorize_places_manual_capture_hold():
    sdk = FakeStripe()
    gateway = _gateway(sdk)

    intent_ref = await gateway.authorize(5060, "cus_123:pm_456", idempotency_key="key-1", metadata={"booking_id": "b1"})

    assert intent_ref == "pi_123"
    name, _, kwargs = sdk.calls[0]
    assert name == "PaymentIntent.create"
    assert kwargs["amount"] == 5060
    assert kwargs["currency"] == "cad"
    assert kwargs["capture_method"] == "manual"
    assert kwargs["customer"] == "cus_123"
    assert kwargs["payment_method"] == "pm_456"
    assert kwargs["idempotency_key"] == "key-1"
    assert kwargs["api_key"] == "sk_test_123"


@pytest.mark.anyio
async def test_charge_that_needs_authentication():
    sdk = FakeStripe()
    sdk.next_status = "requires_action"
    gateway = _gateway(sdk)

    result = await gateway.charge_immediate(2530, "cus_123:pm_456", idempotency_key="key-2")

    assert result.requires_action
    assert result.challenge_ref == "pi_123_secret_abc"
    assert "capture_method" not in sdk.calls[0][2]


@pytest.mark.anyio
async def test_intent_status_reports_the_raw_stripe_status():
    sdk = FakeStripe()
    sdk.next_status = "canceled"
    gateway = _gateway(sdk)

    assert await gateway.intent_status("pi_123") == "canceled"
    assert sdk.calls[0][0] == "PaymentIntent.retrieve"
    assert sdk.calls[0][1] == ("pi_123",)


@pytest.mark.anyio
async def test_refund_and_release_pass_idempotency_keys():
    sdk = FakeStripe()
    gateway = _gateway(sdk)

    assert await gateway.refund("pi_123", 1265, idempotency_key="key-3") == "re_123"
    await gateway.release("pi_123", idempotency_key="key-4")

    assert sdk.calls[0][2] == {
        "payment_intent": "pi_123",
        "amount": 1265,
        "idempotency_key": "key-3",
        "api_key": "sk_test_123",
    }
    assert sdk.calls[1][1] == ("pi_123",)
    assert sdk.calls[1][2]["idempotency_key"] == "key-4"


@pytest.mark.anyio
async def test_card_errors_are_declines_and_keep_the_circuit_closed():
    sdk = FakeStripe()
    sdk.raise_error = FakeCardError("Your card was declined.", code="card_declined")
    gateway = _gateway(sdk, ignored=(FakeCardError,))

    for _ in range(3):
        with pytest.raises(PaymentDeclined) as exc_info:
            await gateway.authorize(5060, "cus_123:pm_456", idempotency_key="key-5")

    assert exc_info.value.code == "card_declined"
    assert gateway.circuit.state == "closed"


@pytest.mark.anyio
async def test_provider_errors_open_the_circuit():
    sdk = FakeStripe()
    sdk.raise_error = FakeStripeError("api down", code="api_error")
    gateway = _gateway(sdk)

    for _ in range(2):
        with pytest.raises(PaymentProviderUnavailable):
            await gateway.capture("pi_123", idempotency_key="key-6")

    with pytest.raises(PaymentProviderUnavailable) as exc_info:
        await gateway.capture("pi_123", idempotency_key="key-6")

    assert exc_info.value.code == "circuit_open"
    assert len(sdk.calls) == 2


@pytest.mark.anyio
async def test_missing_secret_key_is_unavailable(monkeypatch):
    from spotbook.settings import settings

    monkeypatch.setattr(settings, "stripe_secret_key", None)
    gateway = _gateway(FakeStripe(), secret_key=None)

    with pytest.raises(PaymentProviderUnavailable) as exc_info:
        await gateway.intent_status("pi_123")

    assert exc_info.value.code == "not_configured"
