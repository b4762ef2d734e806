from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass

import httpx

from invoicerun.core.config import get_settings
from invoicerun.domain.events import InvoiceEvent
from invoicerun.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from invoicerun.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

WEBHOOK_INTEGRATION = "invoice.events.webhook"


class NullEventBus:
    async def publish(self, event: InvoiceEvent) -> None:
        return None


class InMemoryEventBus:
    """Collects published events; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[InvoiceEvent] = []

    async def publish(self, event: InvoiceEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[InvoiceEvent]:
        return [event for event in self.events if event["type"] == event_type]

    def clear(self) -> None:
        self.events.clear()


@dataclass(frozen=True)
class WebhookDeliveryResult:
    sent: bool
    status_code: int | None
    message: str


def build_event_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookEventBus:
    """Posts signed invoice events to a downstream receiver.

    Delivery is at-least-once from the caller's point of view but best-effort here:
    failures are logged and counted, never raised into the invoice run.
    """

    def __init__(
        self,
        *,
        url: str,
        secret: str,
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._url = url
        self._secret = secret
        self._timeout_s = min(timeout_ms or settings.event_webhook_timeout_ms, settings.ext_call_timeout_ms) / 1000.0
        self._transport = transport
        self._breaker: CircuitBreaker | None = None

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            redis = None
            if get_settings().invoice_execution_mode.lower() != "inline":
                redis = await get_resilience_redis()
            self._breaker = CircuitBreaker(WEBHOOK_INTEGRATION, redis=redis)
        return self._breaker

    async def publish(self, event: InvoiceEvent) -> None:
        await self.deliver(event)

    async def deliver(self, event: InvoiceEvent) -> WebhookDeliveryResult:
        body = json.dumps(event, separators=(",", ":"), ensure_ascii=False, sort_keys=True).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Invoice-Signature": build_event_signature(self._secret, body),
            "X-Invoice-Event": event["type"],
        }
        breaker: CircuitBreaker | None = None
        start = time.monotonic()
        try:
            breaker = await self._get_breaker()
            await breaker.before_call()

            async def _call() -> httpx.Response:
                async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                    response = await client.post(self._url, content=body, headers=headers)
                if response.status_code >= 500:
                    response.raise_for_status()
                return response

            def _retryable(exc: Exception) -> bool:
                if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
                    return True
                if isinstance(exc, httpx.HTTPStatusError):
                    return exc.response.status_code >= 500
                return False

            response = await retry_async(_call, retryable=_retryable)
        except Exception as exc:  # noqa: BLE001 - event delivery failures are non-fatal
            if breaker is not None:
                try:
                    await breaker.record_failure()
                except Exception:  # noqa: BLE001 - breaker bookkeeping is best-effort
                    logger.debug("event_webhook_breaker_update_failed", exc_info=True)
            record_external_call(
                integration=WEBHOOK_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            increment_counter("invoice_event_delivery_failures_total")
            logger.warning("invoice_event_webhook_failed event_type=%s", event["type"], exc_info=exc)
            return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

        record_external_call(
            integration=WEBHOOK_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code >= 400:
            increment_counter("invoice_event_delivery_failures_total")
            logger.warning(
                "invoice_event_webhook_rejected event_type=%s status=%s", event["type"], response.status_code
            )
            return WebhookDeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Webhook responded with status {response.status_code}",
            )
        await breaker.record_success()
        return WebhookDeliveryResult(sent=True, status_code=response.status_code, message="Webhook delivered")


def get_event_bus():
    settings = get_settings()
    if not settings.event_webhook_enabled:
        return NullEventBus()
    if not settings.event_webhook_url or not settings.event_webhook_secret:
        logger.warning("invoice_event_webhook_not_configured")
        return NullEventBus()
    return WebhookEventBus(url=settings.event_webhook_url, secret=settings.event_webhook_secret)
