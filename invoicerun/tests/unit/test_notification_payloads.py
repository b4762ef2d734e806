from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from invoicerun.domain.invoices import GenerationRequest, PluginProperty, RunOrigin
from invoicerun.domain.payloads import InvoiceNotificationPayload


def test_payload_carries_request_state_into_the_queue() -> None:
    request = GenerationRequest(
        account_id="acct-1",
        tenant_id="t1",
        target_date=date(2012, 5, 1),
        properties=(PluginProperty("coupon", "SPRING", is_updatable=True),),
        retry_count=2,
    )
    payload = InvoiceNotificationPayload.from_request(
        request, origin=RunOrigin.RETRY, retry_count=3, last_error="boom"
    )
    stored = payload.model_dump(mode="json")
    assert stored["target_date"] == "2012-05-01"
    assert stored["origin"] == "retry"

    restored = InvoiceNotificationPayload.model_validate(stored).to_request(notification_id="n-1")
    assert restored.notification_id == "n-1"
    assert restored.retry_count == 3
    assert restored.origin is RunOrigin.RETRY
    assert restored.properties == request.properties
    assert restored.is_queue_driven is True


def test_payload_rejects_negative_retry_count() -> None:
    with pytest.raises(ValidationError):
        InvoiceNotificationPayload(account_id="a", tenant_id="t", target_date=date(2012, 5, 1), retry_count=-1)
