from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from invoicerun.core.config import NEXT_BILLING_DATE_QUEUE, NEXT_BILLING_DATE_RETRY_QUEUE
from invoicerun.domain.invoices import Invoice
from invoicerun.domain.models import ScheduledNotification
from invoicerun.domain.payloads import InvoiceNotificationPayload
from invoicerun.persistence.db import SessionLocal
from invoicerun.services.invoicing.api import InvoiceUserApi
from invoicerun.services.invoicing.coordinator import RunCoordinator
from invoicerun.services.invoicing.factory import build_coordinator
from invoicerun.services.invoicing.event_bus import InMemoryEventBus
from invoicerun.services.notifications import queue
from invoicerun.services.notifications.poller import run_due_notifications_cycle
from invoicerun.services.plugins.registry import PluginRegistry
from invoicerun.tests.utils.fakes import (
    FakeInvoicePlugin,
    FrozenClock,
    MonthlyBillingSource,
    ScriptedRebalancer,
    utc,
)


ACCOUNT_ID = "acct-1"
TENANT_ID = "t1"


@dataclass
class InvoiceHarness:
    coordinator: RunCoordinator
    api: InvoiceUserApi
    plugin: FakeInvoicePlugin
    billing: MonthlyBillingSource
    bus: InMemoryEventBus
    clock: FrozenClock
    rebalancer: ScriptedRebalancer
    registry: PluginRegistry = field(default_factory=PluginRegistry)

    async def fire_due(self, *, at: datetime | None = None) -> dict[str, int]:
        # Move the clock and run one in-process poller cycle.
        if at is not None:
            self.clock.set(at)
        return await run_due_notifications_cycle(self.coordinator, now=self.clock())

    async def pending(
        self, queue_name: str = NEXT_BILLING_DATE_QUEUE, account_id: str = ACCOUNT_ID
    ) -> list[ScheduledNotification]:
        async with SessionLocal() as session:
            return await queue.list_pending(session, queue_name=queue_name, account_id=account_id)

    async def pending_retries(self, account_id: str = ACCOUNT_ID) -> list[ScheduledNotification]:
        return await self.pending(NEXT_BILLING_DATE_RETRY_QUEUE, account_id)

    async def dead_letters(self, account_id: str = ACCOUNT_ID) -> list[ScheduledNotification]:
        async with SessionLocal() as session:
            return await queue.list_dead_letters(session, account_id=account_id)

    async def invoices(self, account_id: str = ACCOUNT_ID) -> list[Invoice]:
        return await self.api.get_invoices(account_id)


def payload_of(row: ScheduledNotification) -> InvoiceNotificationPayload:
    return InvoiceNotificationPayload.model_validate(row.payload_json)


def build_harness(
    *,
    subscriptions: Sequence[str] = ("sub-1",),
    plugin: FakeInvoicePlugin | None = None,
    rebalancer: ScriptedRebalancer | None = None,
    now: datetime | None = None,
) -> InvoiceHarness:
    plugin = plugin or FakeInvoicePlugin()
    rebalancer = rebalancer or ScriptedRebalancer()
    billing = MonthlyBillingSource(subscriptions)
    bus = InMemoryEventBus()
    clock = FrozenClock(now or utc(2012, 4, 1))
    registry = PluginRegistry()
    registry.register("test-invoice-plugin", plugin)
    coordinator = RunCoordinator(
        billing,
        registry=registry,
        rebalancer=rebalancer,
        event_bus=bus,
        clock=clock,
    )
    return InvoiceHarness(
        coordinator=coordinator,
        api=InvoiceUserApi(coordinator),
        plugin=plugin,
        billing=billing,
        bus=bus,
        clock=clock,
        rebalancer=rebalancer,
        registry=registry,
    )


def bootstrap_coordinator() -> RunCoordinator:
    # INVOICE_BOOTSTRAP target used by worker bootstrap tests.
    return build_coordinator(MonthlyBillingSource(), rebalancer=ScriptedRebalancer())
