import asyncio
import logging
import random
from typing import Any, Protocol

import anyio
import httpx

from spotbook.infra.metrics import metrics
from spotbook.settings import settings
from spotbook.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

BOOKING_REQUESTED = "booking_requested"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_DECLINED = "booking_declined"
BOOKING_EXPIRED = "booking_expired"
BOOKING_CANCELED = "booking_canceled"
BOOKING_EXTENDED = "booking_extended"
BOOKING_MODIFIED = "booking_modified"
BOOKING_COMPLETED = "booking_completed"
BOOKING_APPROVAL_REMINDER = "booking_approval_reminder"
BOOKING_ENDING_SOON = "booking_ending_soon"
EXTENSION_AUTHENTICATION_REQUIRED = "extension_authentication_required"
OVERSTAY_DETECTED = "overstay_detected"
OVERSTAY_ACTION_NEEDED = "overstay_action_needed"
OVERSTAY_GRACE_ENDED = "overstay_grace_ended"
OVERSTAY_CHARGE_UPDATE = "overstay_charge_update"
OVERSTAY_CHARGING_STARTED = "overstay_charging_started"
OVERSTAY_TOW_REQUESTED = "overstay_tow_requested"
OVERSTAY_TOW_CANCELED = "overstay_tow_canceled"


class Notifier(Protocol):
    async def notify(self, user_id: str, notification_type: str, payload: dict[str, Any]) -> bool: ...

    async def drain(self) -> None: ...


class NoopNotifier:
    async def notify(self, user_id: str, notification_type: str, payload: dict[str, Any]) -> bool:
        logger.info(
            "notification_skipped",
            extra={"extra": {"user_id": user_id, "type": notification_type, "mode": "off"}},
        )
        metrics.record_notification(notification_type, "skipped")
        return False

    async def drain(self) -> None:
        return None


class WebhookNotifier:
    """Delivers notifications to the messaging service over HTTP.

    ``notify`` only queues the delivery on the running loop and returns, so a
    booking transition never waits on retries against a slow push provider.
    ``deliver`` does the actual work: failures are logged and reported as
    ``False``, never raised.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="notifications",
            failure_threshold=settings.notification_circuit_failure_threshold,
            recovery_time=settings.notification_circuit_recovery_seconds,
        )
        self._pending: set[asyncio.Task] = set()

    async def notify(self, user_id: str, notification_type: str, payload: dict[str, Any]) -> bool:
        if not settings.notification_webhook_url:
            metrics.record_notification(notification_type, "skipped")
            return False
        loop = asyncio.get_running_loop()
        task = loop.create_task(self.deliver(user_id, notification_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def drain(self) -> None:
        """Wait for queued deliveries, e.g. before shutdown or a job run exits."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def deliver(self, user_id: str, notification_type: str, payload: dict[str, Any]) -> bool:
        if not settings.notification_webhook_url:
            metrics.record_notification(notification_type, "skipped")
            return False
        body = {"user_id": user_id, "type": notification_type, "payload": payload}
        try:
            await self._breaker.call(self._deliver, body)
        except CircuitBreakerOpenError:
            logger.warning("notification_circuit_open", extra={"extra": {"type": notification_type}})
            metrics.record_notification(notification_type, "circuit_open")
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_failed",
                extra={"extra": {"type": notification_type, "user_id": user_id, "error": type(exc).__name__}},
            )
            metrics.record_notification(notification_type, "error")
            return False
        metrics.record_notification(notification_type, "delivered")
        return True

    async def _deliver(self, body: dict[str, Any]) -> None:
        headers = {}
        if settings.notification_webhook_token:
            headers["Authorization"] = f"Bearer {settings.notification_webhook_token}"
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await _post_with_retry(
                client, settings.notification_webhook_url, headers=headers, json=body
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"notification_status_{response.status_code}")


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    json: dict[str, Any],
) -> httpx.Response:
    max_attempts = max(1, settings.notification_max_attempts)
    base_backoff = settings.notification_backoff_seconds

    for attempt in range(1, max_attempts + 1):
        try:
            response = await client.post(
                url,
                headers=headers,
                json=json,
                timeout=settings.notification_timeout_seconds,
            )
        except (httpx.TimeoutException, httpx.ConnectError):
            if attempt >= max_attempts:
                raise
        else:
            if response.status_code != 429 and response.status_code < 500:
                return response
            if attempt >= max_attempts:
                return response
        delay = base_backoff * (2 ** (attempt - 1))
        await anyio.sleep(delay + delay * random.uniform(0.0, 0.3))

    raise RuntimeError("notification_retry_exhausted")  # pragma: no cover


def build_notifier(app_settings=None) -> Notifier:
    source = app_settings or settings
    if source.notification_mode == "webhook":
        return WebhookNotifier()
    return NoopNotifier()
