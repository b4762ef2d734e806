from __future__ import annotations

from datetime import date

import pytest

from invoicerun.core.config import get_settings
from invoicerun.core.errors import NothingToDoError, PluginConfigError
from invoicerun.domain.invoices import (
    DRY_RUN_CUR_DATE_PROPERTY,
    DRY_RUN_TARGET_DATE_PROPERTY,
    DryRunArguments,
    DryRunType,
    InvoiceItemType,
)
from invoicerun.services.invoicing.coordinator import RunCoordinator
from invoicerun.services.invoicing.factory import configure_coordinator, get_coordinator, reset_coordinator
from invoicerun.services.notifications import queue
from invoicerun.tests.utils.fakes import utc
from invoicerun.tests.utils.harness import ACCOUNT_ID, TENANT_ID
from invoicerun.workers.invoice_worker import process_invoice_notification


@pytest.mark.asyncio
async def test_dry_run_for_target_date_persists_nothing(harness) -> None:
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))

    preview = await harness.api.trigger_dry_run(ACCOUNT_ID, TENANT_ID, date(2012, 5, 1))

    assert preview.is_dry_run is True
    assert [item.item_type for item in preview.items] == [InvoiceItemType.RECURRING]
    assert len(await harness.invoices()) == 1
    assert len(await harness.pending()) == 1
    assert len(harness.bus.of_type("invoice.created")) == 1
    assert len(harness.plugin.steps("on_success_call")) == 1

    items_call = harness.plugin.steps("get_additional_items")[-1]
    assert items_call.is_dry_run is True
    properties = {prop.key: prop.value for prop in items_call.properties}
    assert properties[DRY_RUN_TARGET_DATE_PROPERTY] == "2012-05-01"
    assert properties[DRY_RUN_CUR_DATE_PROPERTY] == "2012-04-01"
    assert harness.plugin.steps("prior_call")[-1].context.is_dry_run is True


@pytest.mark.asyncio
async def test_upcoming_invoice_dry_run_uses_next_scheduled_notification(harness) -> None:
    with pytest.raises(NothingToDoError) as excinfo:
        await harness.api.trigger_dry_run(
            ACCOUNT_ID, TENANT_ID, None, DryRunArguments(dry_run_type=DryRunType.UPCOMING_INVOICE)
        )
    assert excinfo.value.reason == "no_upcoming_invoice"

    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    preview = await harness.api.trigger_dry_run(
        ACCOUNT_ID, TENANT_ID, None, DryRunArguments(dry_run_type=DryRunType.UPCOMING_INVOICE)
    )
    assert preview.target_date == date(2012, 5, 1)
    assert [item.start_date for item in preview.items] == [date(2012, 5, 1)]


@pytest.mark.asyncio
async def test_dry_run_abort_and_empty_preview_raise_nothing_to_do(harness) -> None:
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))

    with pytest.raises(NothingToDoError) as excinfo:
        await harness.api.trigger_dry_run(ACCOUNT_ID, TENANT_ID, date(2012, 4, 15))
    assert excinfo.value.reason == "no_items"

    harness.plugin.abort = True
    with pytest.raises(NothingToDoError) as excinfo:
        await harness.api.trigger_dry_run(ACCOUNT_ID, TENANT_ID, date(2012, 5, 1))
    assert excinfo.value.reason == "aborted"


@pytest.mark.asyncio
async def test_worker_job_processes_claimed_notification(harness) -> None:
    configure_coordinator(harness.coordinator)
    await harness.api.trigger_generation(ACCOUNT_ID, TENANT_ID, date(2012, 4, 1))
    harness.clock.set(utc(2012, 5, 1))

    async with harness.coordinator.session_factory() as session:
        (claimed,) = await queue.claim_due(session, now=harness.clock())

    assert await process_invoice_notification({}, claimed.id) == "persisted"
    assert await process_invoice_notification({}, claimed.id) == "skipped"
    assert len(await harness.invoices()) == 2


def test_coordinator_bootstrap_from_settings(monkeypatch) -> None:
    monkeypatch.delenv("INVOICE_BOOTSTRAP", raising=False)
    get_settings.cache_clear()
    with pytest.raises(PluginConfigError):
        get_coordinator()

    monkeypatch.setenv("INVOICE_BOOTSTRAP", "invoicerun.tests.utils.harness:ACCOUNT_ID")
    get_settings.cache_clear()
    with pytest.raises(PluginConfigError):
        get_coordinator()

    monkeypatch.setenv("INVOICE_BOOTSTRAP", "no-colon")
    get_settings.cache_clear()
    with pytest.raises(PluginConfigError):
        get_coordinator()

    monkeypatch.setenv("INVOICE_BOOTSTRAP", "invoicerun.tests.utils.harness:bootstrap_coordinator")
    get_settings.cache_clear()
    coordinator = get_coordinator()
    assert isinstance(coordinator, RunCoordinator)
    assert get_coordinator() is coordinator
    reset_coordinator()
