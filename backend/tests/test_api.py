from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider

from spotbook.infra.metrics import configure_metrics
from spotbook.main import create_app
from spotbook.services import build_app_services
from spotbook.settings import settings

START_OF_TEST = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
RENTER = {"X-User-Id": "renter-1"}
HOST = {"X-User-Id": "host-1"}


def _payload(**overrides) -> dict:
    start_at = START_OF_TEST + timedelta(hours=2)
    payload = {
        "spot_id": "spot-1",
        "host_id": "host-1",
        "hourly_rate_cents": 1000,
        "start_at": start_at.isoformat(),
        "end_at": (start_at + timedelta(hours=4)).isoformat(),
        "payer_ref": "cus_123:pm_456",
    }
    payload.update(overrides)
    return payload


def _guest() -> dict:
    return {"name": "Sam Driver", "email": "sam@example.com", "phone": "+1 555 010 0000"}


def _create(client, headers=RENTER, **overrides) -> dict:
    response = client.post("/v1/bookings", json=_payload(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_booking_for_renter(app_client):
    body = _create(app_client)

    assert body["effect"] == "created"
    assert body["amount_cents"] == 5060
    assert body["guest_token"] is None
    booking = body["booking"]
    assert booking["status"] == "held"
    assert booking["renter_id"] == "renter-1"
    assert booking["total_amount_cents"] == 5060
    assert datetime.fromisoformat(booking["approval_deadline"]) == START_OF_TEST + timedelta(minutes=60)


def test_booking_access_requires_a_party(app_client):
    booking_id = _create(app_client)["booking"]["booking_id"]

    anonymous = app_client.get(f"/v1/bookings/{booking_id}")
    assert anonymous.status_code == 401
    assert anonymous.headers["content-type"].startswith("application/problem+json")
    assert anonymous.json()["type"].endswith("/unauthorized")

    stranger = app_client.get(f"/v1/bookings/{booking_id}", headers={"X-User-Id": "someone-else"})
    assert stranger.status_code == 403

    assert app_client.get(f"/v1/bookings/{booking_id}", headers=HOST).status_code == 200
    assert app_client.get(f"/v1/bookings/{booking_id}", headers=RENTER).status_code == 200


def test_only_the_host_approves(app_client, notifier):
    booking_id = _create(app_client)["booking"]["booking_id"]

    assert app_client.post(f"/v1/bookings/{booking_id}/approve", headers=RENTER).status_code == 403

    response = app_client.post(f"/v1/bookings/{booking_id}/approve", headers=HOST)
    assert response.status_code == 200
    assert response.json()["effect"] == "approved"
    assert response.json()["booking"]["status"] == "active"
    assert response.json()["booking"]["approval_deadline"] is None

    again = app_client.post(f"/v1/bookings/{booking_id}/approve", headers=HOST)
    assert again.status_code == 409
    assert again.json()["type"].endswith("/illegal-transition")


def test_guest_booking_uses_its_token(app_client):
    body = _create(app_client, headers={}, guest=_guest())
    booking_id = body["booking"]["booking_id"]
    token = body["guest_token"]

    assert body["booking"]["is_guest"] is True
    assert body["booking"]["renter_id"] is None
    assert token

    own = app_client.get(f"/v1/bookings/{booking_id}", headers={"X-Guest-Token": token})
    assert own.status_code == 200

    other_id = _create(app_client, spot_id="spot-2", headers={}, guest=_guest())["booking"]["booking_id"]
    assert app_client.get(f"/v1/bookings/{other_id}", headers={"X-Guest-Token": token}).status_code == 403
    assert app_client.get(f"/v1/bookings/{booking_id}", headers={"X-Guest-Token": "bogus"}).status_code == 401

    canceled = app_client.post(f"/v1/bookings/{booking_id}/cancel", headers={"X-Guest-Token": token})
    assert canceled.status_code == 200
    assert canceled.json()["booking"]["status"] == "canceled"
    assert canceled.json()["booking"]["cancellation_reason"] == "within grace period"


def test_booking_needs_exactly_one_party(app_client):
    anonymous = app_client.post("/v1/bookings", json=_payload())
    assert anonymous.status_code == 422
    assert anonymous.json()["type"].endswith("/invalid-parties")

    both = app_client.post("/v1/bookings", json=_payload(guest=_guest()), headers=RENTER)
    assert both.status_code == 422


def test_validation_errors_render_problem_details(app_client):
    response = app_client.post(
        "/v1/bookings",
        json={"spot_id": "spot-1", "host_id": "host-1", "hourly_rate_cents": 0},
        headers={**RENTER, "X-Request-ID": "req-123"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["type"].endswith("/validation-error")
    assert body["request_id"] == "req-123"
    assert response.headers["X-Request-ID"] == "req-123"
    fields = {error["field"] for error in body["errors"]}
    assert {"hourly_rate_cents", "start_at", "end_at", "payer_ref"} <= fields


def test_domain_errors_render_problem_details(app_client):
    start_at = START_OF_TEST + timedelta(hours=2)
    response = app_client.post(
        "/v1/bookings", json=_payload(end_at=start_at.isoformat()), headers=RENTER
    )

    assert response.status_code == 422
    body = response.json()
    assert body["type"].endswith("/invalid-window")
    assert body["title"] == "Invalid Booking Window"
    assert body["request_id"]

    missing = app_client.get("/v1/bookings/does-not-exist", headers=RENTER)
    assert missing.status_code == 404


def test_extension_that_needs_authentication(app_client, gateway):
    booking_id = _create(app_client, instant_book=True)["booking"]["booking_id"]
    gateway.charges_require_action = True
    new_end = START_OF_TEST + timedelta(hours=8)

    pending = app_client.post(
        f"/v1/bookings/{booking_id}/extend", json={"new_end_at": new_end.isoformat()}, headers=RENTER
    )
    assert pending.status_code == 200
    body = pending.json()
    assert body["effect"] == "extension_authentication_required"
    assert body["challenge_ref"]

    early = app_client.post(
        f"/v1/bookings/{booking_id}/extensions/{body['attempt_id']}/finalize", headers=RENTER
    )
    assert early.status_code == 402

    intent_ref = next(iter(ref for ref, intent in gateway.intents.items() if intent.status == "requires_action"))
    gateway.complete_authentication(intent_ref)
    finalized = app_client.post(
        f"/v1/bookings/{booking_id}/extensions/{body['attempt_id']}/finalize", headers=RENTER
    )
    assert finalized.status_code == 200
    assert finalized.json()["booking"]["total_amount_cents"] == 7590

    assert (
        app_client.post(
            f"/v1/bookings/{booking_id}/extend", json={"new_end_at": new_end.isoformat()}, headers=HOST
        ).status_code
        == 403
    )


def test_overstay_flow_over_http(app_client, clock):
    booking = _create(app_client, instant_book=True)["booking"]
    booking_id = booking["booking_id"]
    end_at = datetime.fromisoformat(booking["end_at"])

    clock.set(end_at + timedelta(minutes=5))
    assert app_client.post(f"/v1/bookings/{booking_id}/overstay/detect", headers=RENTER).status_code == 403
    detected = app_client.post(f"/v1/bookings/{booking_id}/overstay/detect", headers=HOST)
    assert detected.json()["effect"] == "overstay_detected"

    clock.set(end_at + timedelta(minutes=16))
    action = app_client.post(
        f"/v1/bookings/{booking_id}/overstay/action", json={"action": "charging"}, headers=HOST
    )
    assert action.status_code == 200

    clock.set(end_at + timedelta(minutes=45))
    live = app_client.get(f"/v1/bookings/{booking_id}", headers=RENTER).json()
    assert live["overstay_charge_cents"] == 1250

    departed = app_client.post(f"/v1/bookings/{booking_id}/confirm-departure", headers=RENTER)
    assert departed.json()["booking"]["status"] == "completed"
    assert departed.json()["amount_cents"] == 1250


def test_pricing_quote(app_client):
    start_at = START_OF_TEST + timedelta(hours=2)
    params = {
        "hourly_rate_cents": 1000,
        "start_at": start_at.isoformat(),
        "end_at": (start_at + timedelta(hours=4)).isoformat(),
    }

    quote = app_client.get("/v1/pricing/quote", params=params)
    assert quote.status_code == 200
    body = quote.json()
    assert body["driver_hourly_rate_cents"] == 1100
    assert body["subtotal_cents"] == 4400
    assert body["service_fee_cents"] == 660
    assert body["total_cents"] == 5060

    inverted = app_client.get("/v1/pricing/quote", params={**params, "end_at": params["start_at"]})
    assert inverted.status_code == 422


def test_health_endpoints(app_client):
    assert app_client.get("/healthz").json() == {"status": "ok"}
    assert app_client.head("/healthz").status_code == 200

    ready = app_client.get("/readyz")
    assert ready.status_code == 200
    checks = {check["name"]: check for check in ready.json()["checks"]}
    assert checks["db"]["detail"]["message"] == "skipped"
    assert checks["payments"]["detail"]["mode"] == "fake"


def test_metrics_endpoint_requires_token(store, gateway, notifier, clock):
    settings.metrics_enabled = True
    settings.metrics_token = "scrape-secret"
    metrics_client = configure_metrics(True)
    services = build_app_services(
        settings, metrics=metrics_client, store=store, payment_gateway=gateway, notifier=notifier, clock=clock
    )
    app = create_app(settings, tracer_provider=TracerProvider(), services=services)

    with TestClient(app, raise_server_exceptions=False) as client:
        client.post("/v1/bookings", json=_payload(), headers=RENTER)

        assert client.get("/metrics").status_code == 401
        assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401

        scraped = client.get("/metrics", headers={"Authorization": "Bearer scrape-secret"})
        assert scraped.status_code == 200
        assert "booking_transitions_total" in scraped.text
        assert client.get("/metrics", params={"token": "scrape-secret"}).status_code == 200
