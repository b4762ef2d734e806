from __future__ import annotations

from datetime import date
from typing import Protocol, Sequence

from invoicerun.domain.events import InvoiceEvent
from invoicerun.domain.invoices import BillingEvent, InvoiceDraft, InvoiceItem


class BillingEventSource(Protocol):
    """Entitlement and usage side of billing, owned outside this package."""

    async def billing_events(self, account_id: str, target_date: date) -> Sequence[BillingEvent]:
        # Ordered charges and usage due for the account up to and including target_date.
        ...

    async def next_billing_date(self, account_id: str, after: date) -> date | None:
        ...


class CreditRebalancer(Protocol):
    async def rebalance(self, draft: InvoiceDraft) -> list[InvoiceItem]:
        # Returns credit (CBA) items to append after adjustments were added this run.
        ...


class EventBus(Protocol):
    async def publish(self, event: InvoiceEvent) -> None:
        ...


class NoopCreditRebalancer:
    async def rebalance(self, draft: InvoiceDraft) -> list[InvoiceItem]:
        return []
