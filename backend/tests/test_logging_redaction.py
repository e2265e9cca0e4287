import json
import logging

from spotbook.infra.logging import configure_logging, redact_pii


def _last_line(capsys) -> dict:
    captured = capsys.readouterr()
    stream = (captured.out + captured.err).strip().splitlines()
    assert stream
    return json.loads(stream[-1])


def test_logging_redacts_tokens_and_payment_secrets(capsys):
    configure_logging()
    logger = logging.getLogger("pii-test")

    logger.info(
        "sensitive log",
        extra={
            "authorization": "Bearer super-secret",
            "extra": {
                "guest_token": "abc.def",
                "payer_ref": "cus_123:pm_456",
                "url": "https://example.com/v1/bookings?guest_token=abc123",
                "note": "client secret pi_3abc_secret_xyz and key sk_test_123abc",
            },
        },
    )

    payload = _last_line(capsys)
    assert payload["authorization"] == "[REDACTED]"
    assert payload["guest_token"] == "[REDACTED]"
    assert payload["payer_ref"] == "[REDACTED]"
    assert "abc123" not in payload["url"]
    assert "pi_3abc_secret_xyz" not in payload["note"]
    assert "sk_test_123abc" not in payload["note"]


def test_logging_redacts_guest_contact_details(capsys):
    configure_logging()
    logging.getLogger("pii-test").info(
        "guest sam@example.com called from 555-010-0000",
        extra={"extra": {"guest": {"email": "sam@example.com", "name": "Sam Driver"}}},
    )

    payload = _last_line(capsys)
    assert "sam@example.com" not in payload["message"]
    assert "[REDACTED_PHONE]" in payload["message"]
    assert payload["guest"] == {"email": "[REDACTED]", "name": "[REDACTED]"}


def test_redact_pii_leaves_plain_text_alone():
    assert redact_pii("booking_expired") == "booking_expired"


def test_request_id_present_in_logs_and_response(app_client, capsys):
    configure_logging()

    async def boom():  # pragma: no cover - executed via HTTP
        raise RuntimeError("boom")

    app_client.app.router.add_api_route("/boom-log", boom, methods=["GET"])

    response = app_client.get("/boom-log", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-123"
    captured = capsys.readouterr()
    combined_stream = (captured.out + captured.err).strip().splitlines()
    unhandled_line = next(line for line in reversed(combined_stream) if "unhandled_exception" in line)
    log_payload = json.loads(unhandled_line)
    assert log_payload.get("request_id") == "req-123"
