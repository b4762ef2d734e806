from __future__ import annotations

from datetime import date

import pytest

from invoicerun.core.config import NEXT_BILLING_DATE_QUEUE
from invoicerun.domain.models import ScheduledNotification
from invoicerun.persistence.db import SessionLocal
from invoicerun.services.locks import account_lease
from invoicerun.services.notifications import queue
from invoicerun.services.telemetry import counters_snapshot
from invoicerun.tests.utils.fakes import utc
from invoicerun.tests.utils.harness import ACCOUNT_ID, TENANT_ID


@pytest.mark.asyncio
async def test_redelivered_notification_does_not_bill_twice(harness) -> None:
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    assert await harness.fire_due(at=utc(2012, 5, 1)) == {"claimed": 1, "persisted": 1}

    # Same cycle delivered again after it was consumed.
    assert await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 5, 1)) is True
    assert await harness.fire_due() == {"claimed": 1, "nothing_to_do": 1}

    assert len(await harness.invoices()) == 2
    assert len(harness.bus.of_type("invoice.null")) == 1
    pending = await harness.pending()
    assert [row.effective_at for row in pending] == [utc(2012, 6, 1)]


@pytest.mark.asyncio
async def test_older_cycle_after_newer_completed_is_stale(harness) -> None:
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    await harness.fire_due(at=utc(2012, 5, 1))

    await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    assert await harness.fire_due() == {"claimed": 1, "stale": 1}

    assert len(await harness.invoices()) == 2
    assert counters_snapshot()["invoice_runs_stale_total"] == 1
    # Stale runs never reach the plugin.
    assert len(harness.plugin.steps("prior_call")) == 2
    pending = await harness.pending()
    assert [row.effective_at for row in pending] == [utc(2012, 6, 1)]


@pytest.mark.asyncio
async def test_schedule_next_billing_date_keeps_one_notification_per_window(harness) -> None:
    assert await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 5, 1)) is True
    assert await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 5, 1)) is False
    assert await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 5, 2)) is True
    assert len(await harness.pending()) == 2


@pytest.mark.asyncio
async def test_busy_account_hands_notification_back_to_poller(harness) -> None:
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))

    async with account_lease(ACCOUNT_ID):
        assert await harness.fire_due(at=utc(2012, 5, 1)) == {"claimed": 1, "skipped": 1}

    (row,) = await harness.pending()
    assert row.status == queue.STATUS_PENDING
    assert "AccountBusyError" in row.last_error
    assert counters_snapshot()["account_lease_busy_total"] == 1

    assert await harness.fire_due() == {"claimed": 1, "persisted": 1}
    assert len(await harness.invoices()) == 2


@pytest.mark.asyncio
async def test_poller_runs_due_notifications_for_every_account(harness) -> None:
    await harness.api.schedule_next_billing_date(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    await harness.api.schedule_next_billing_date("acct-2", TENANT_ID, date(2012, 4, 1))
    await harness.api.schedule_next_billing_date("acct-3", TENANT_ID, date(2012, 4, 2))

    assert await harness.fire_due(at=utc(2012, 4, 1)) == {"claimed": 2, "persisted": 2}
    assert len(await harness.invoices(ACCOUNT_ID)) == 1
    assert len(await harness.invoices("acct-2")) == 1
    assert await harness.invoices("acct-3") == []


@pytest.mark.asyncio
async def test_invalid_payload_is_dead_lettered(harness) -> None:
    async with SessionLocal() as session:
        session.add(
            ScheduledNotification(
                id="broken",
                queue_name=NEXT_BILLING_DATE_QUEUE,
                account_id=ACCOUNT_ID,
                tenant_id=TENANT_ID,
                effective_at=utc(2012, 4, 1),
                window_start=utc(2012, 4, 1),
                payload_json={"account_id": ACCOUNT_ID},
                status=queue.STATUS_PENDING,
                attempt_count=0,
            )
        )
        await session.commit()

    assert await harness.fire_due(at=utc(2012, 4, 1)) == {"claimed": 1, "skipped": 1}
    (dead,) = await harness.dead_letters()
    assert dead.id == "broken"
    assert counters_snapshot()["invoice_notification_invalid_total"] == 1
    assert harness.plugin.calls == []
