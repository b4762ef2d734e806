from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from invoicerun.core.config import get_settings
from invoicerun.services.invoicing.event_bus import (
    InMemoryEventBus,
    NullEventBus,
    WebhookEventBus,
    build_event_signature,
    get_event_bus,
)
from invoicerun.services.telemetry import counters_snapshot


EVENT = {
    "type": "invoice.created",
    "account_id": "acct-1",
    "tenant_id": "t1",
    "data": {"invoice_id": "inv-1", "amount": "249.95"},
}


def test_build_event_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"type":"invoice.created"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_event_signature(secret, payload) == expected


@pytest.mark.asyncio
async def test_webhook_delivers_signed_event() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    bus = WebhookEventBus(url="https://bus.test/events", secret="s3cret", transport=httpx.MockTransport(handler))
    result = await bus.deliver(EVENT)

    assert result.sent is True
    (request,) = seen
    assert request.headers["X-Invoice-Event"] == "invoice.created"
    assert request.headers["X-Invoice-Signature"] == build_event_signature("s3cret", request.content)
    assert json.loads(request.content)["data"]["invoice_id"] == "inv-1"


@pytest.mark.asyncio
async def test_webhook_failures_are_reported_not_raised() -> None:
    calls = {"count": 0}

    def unavailable(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    bus = WebhookEventBus(url="https://bus.test/events", secret="s", transport=httpx.MockTransport(unavailable))
    result = await bus.deliver(EVENT)
    assert result.sent is False
    assert calls["count"] == get_settings().ext_retry_max_attempts

    rejected = WebhookEventBus(
        url="https://bus.test/events", secret="s", transport=httpx.MockTransport(lambda request: httpx.Response(400))
    )
    await rejected.publish(EVENT)
    assert counters_snapshot()["invoice_event_delivery_failures_total"] == 2


@pytest.mark.asyncio
async def test_in_memory_bus_filters_by_type() -> None:
    bus = InMemoryEventBus()
    await bus.publish(EVENT)
    await bus.publish({**EVENT, "type": "invoice.null"})
    assert len(bus.of_type("invoice.null")) == 1
    bus.clear()
    assert bus.events == []


def test_get_event_bus_requires_complete_webhook_config(monkeypatch) -> None:
    assert isinstance(get_event_bus(), NullEventBus)

    monkeypatch.setenv("EVENT_WEBHOOK_ENABLED", "true")
    get_settings.cache_clear()
    assert isinstance(get_event_bus(), NullEventBus)

    monkeypatch.setenv("EVENT_WEBHOOK_URL", "https://bus.test/events")
    monkeypatch.setenv("EVENT_WEBHOOK_SECRET", "s")
    get_settings.cache_clear()
    assert isinstance(get_event_bus(), WebhookEventBus)
