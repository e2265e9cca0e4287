from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from spotbook.api.guest_tokens import issue_guest_token, verify_guest_token

ISSUED_AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_token_round_trip():
    token = issue_guest_token("booking-1", now=ISSUED_AT)

    claims = verify_guest_token(token, "booking-1", now=ISSUED_AT + timedelta(days=1))

    assert claims.booking_id == "booking-1"
    assert claims.exp > int(ISSUED_AT.timestamp())


def test_token_is_bound_to_one_booking():
    token = issue_guest_token("booking-1", now=ISSUED_AT)

    with pytest.raises(HTTPException) as exc_info:
        verify_guest_token(token, "booking-2", now=ISSUED_AT)

    assert exc_info.value.status_code == 403


def test_expired_token_is_rejected():
    token = issue_guest_token("booking-1", now=ISSUED_AT)

    with pytest.raises(HTTPException) as exc_info:
        verify_guest_token(token, "booking-1", now=ISSUED_AT + timedelta(days=31))

    assert exc_info.value.status_code == 401


@pytest.mark.parametrize("mutate", [lambda t: t + "0", lambda t: "x" + t, lambda t: t.split(".")[0], lambda t: "!!.??"])
def test_tampered_tokens_are_rejected(mutate):
    token = issue_guest_token("booking-1", now=ISSUED_AT)

    with pytest.raises(HTTPException) as exc_info:
        verify_guest_token(mutate(token), "booking-1", now=ISSUED_AT)

    assert exc_info.value.status_code == 401
