from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any


def _stable_extra_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def make_idempotency_key(
    purpose: str,
    *,
    booking_id: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    extra: dict | None = None,
) -> str:
    """Deterministic idempotency key for a payment mutation.

    The same logical operation (purpose, booking, amount and whatever booking
    state distinguishes it, passed in ``extra``) always yields the same key,
    so a retry after a crash or timeout is de-duplicated by the provider
    instead of moving money twice.

    Format: ``<prefix8>-<sha256hex32>``.
    """
    parts: list[str] = [purpose]
    if booking_id is not None:
        parts.append(f"b:{booking_id}")
    if amount_cents is not None:
        parts.append(f"a:{amount_cents}")
    if currency is not None:
        parts.append(f"c:{currency.lower()}")
    if extra:
        for k in sorted(extra.keys()):
            parts.append(f"x:{k}:{_stable_extra_value(extra[k])}")

    raw = "|".join(parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:32]
    prefix = purpose[:8].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"
