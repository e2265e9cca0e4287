import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status

from spotbook.settings import settings

GUEST_TOKEN_TYPE = "guest_booking"
_INVALID = "Invalid or expired guest token"


@dataclass
class GuestTokenClaims:
    booking_id: str
    exp: int


def _signing_secret(app_settings=None) -> str:
    return (app_settings or settings).guest_token_secret


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_INVALID)


def _encode_payload(payload: dict[str, Any], secret: str) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    b64 = base64.urlsafe_b64encode(raw).rstrip(b"=").decode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return f"{b64}.{sig}"


def _decode_payload(token: str, secret: str) -> dict[str, Any]:
    if "." not in token:
        raise _unauthorized()
    encoded, provided_sig = token.rsplit(".", 1)
    padding = "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(encoded + padding)
    except ValueError as exc:
        raise _unauthorized() from exc
    expected = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided_sig):
        raise _unauthorized()
    try:
        payload = json.loads(raw.decode())
    except ValueError as exc:
        raise _unauthorized() from exc
    if not isinstance(payload, dict):
        raise _unauthorized()
    return payload


def issue_guest_token(booking_id: str, *, app_settings=None, now: datetime | None = None) -> str:
    """Sign a bearer token that lets a guest act on exactly one booking."""
    source = app_settings or settings
    issued_at = now or _now()
    exp = int((issued_at + timedelta(minutes=source.guest_token_ttl_minutes)).timestamp())
    payload = {
        "booking_id": booking_id,
        "exp": exp,
        "typ": GUEST_TOKEN_TYPE,
        "jti": secrets.token_hex(8),
    }
    return _encode_payload(payload, _signing_secret(source))


def verify_guest_token(
    token: str, booking_id: str, *, app_settings=None, now: datetime | None = None
) -> GuestTokenClaims:
    payload = _decode_payload(token, _signing_secret(app_settings))
    if payload.get("typ") != GUEST_TOKEN_TYPE:
        raise _unauthorized()
    try:
        claims = GuestTokenClaims(booking_id=str(payload["booking_id"]), exp=int(payload["exp"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise _unauthorized() from exc
    current = now or _now()
    if claims.exp <= int(current.timestamp()):
        raise _unauthorized()
    if not hmac.compare_digest(claims.booking_id, booking_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token does not grant access to this booking")
    return claims
