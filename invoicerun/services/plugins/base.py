from __future__ import annotations

from typing import Protocol, Sequence

from invoicerun.domain.invoices import (
    GroupingResult,
    InvoiceContext,
    InvoiceDraft,
    InvoiceItem,
    PluginProperty,
    PriorCallResult,
)


class InvoicePluginApi(Protocol):
    """Lifecycle hooks a third-party invoice plugin implements.

    Calls arrive in a fixed order per run: ``prior_call``, ``get_additional_items``,
    ``get_grouping``, then ``on_success_call`` once per emitted invoice or
    ``on_failure_call`` once per failed run. Every call receives the properties of
    the triggering request. Raising ``PluginRetryableError`` from
    ``get_additional_items`` queues a retry; any other exception fails the run.
    """

    async def prior_call(
        self, context: InvoiceContext, properties: Sequence[PluginProperty]
    ) -> PriorCallResult | None:
        ...

    async def get_additional_items(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> list[InvoiceItem]:
        ...

    async def get_grouping(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> GroupingResult | None:
        ...

    async def on_success_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        ...

    async def on_failure_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        ...
