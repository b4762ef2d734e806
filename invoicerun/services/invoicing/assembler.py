from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from invoicerun.core.config import get_settings
from invoicerun.core.errors import InvoiceValidationError
from invoicerun.domain.invoices import (
    ADJUSTMENT_ITEM_TYPES,
    LINKED_ITEM_TYPES,
    BillingEvent,
    GenerationRequest,
    Invoice,
    InvoiceDraft,
    InvoiceItem,
    InvoiceItemType,
)
from invoicerun.services.invoicing.collaborators import BillingEventSource, CreditRebalancer, NoopCreditRebalancer


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeOutcome:
    # Persisted items overwritten in place on their owning invoice.
    updated_items: list[InvoiceItem] = field(default_factory=list)
    # New items addressed to an earlier invoice of the account, keyed by invoice id.
    prior_additions: dict[str, list[InvoiceItem]] = field(default_factory=lambda: defaultdict(list))
    appended: int = 0
    rewritten: int = 0
    adjustments_added: bool = False
    # Invoice ids that received an adjustment this run.
    adjusted_invoice_ids: set[str] = field(default_factory=set)

    @property
    def touches_prior_invoices(self) -> bool:
        return bool(self.updated_items) or any(self.prior_additions.values())


def billing_key(event: BillingEvent) -> str:
    # Identifies the billed service period; the amount is left out because plugins may rewrite it.
    end = event.end_date.isoformat() if event.end_date else "-"
    return f"{InvoiceItemType(event.item_type).value}:{event.subscription_id or '-'}:{event.start_date.isoformat()}:{end}"


class InvoiceAssembler:
    def __init__(
        self,
        billing_source: BillingEventSource,
        *,
        rebalancer: CreditRebalancer | None = None,
        default_currency: str | None = None,
    ) -> None:
        self._billing_source = billing_source
        self._rebalancer = rebalancer or NoopCreditRebalancer()
        self._default_currency = default_currency or get_settings().default_currency

    async def build_draft(self, request: GenerationRequest, prior_invoices: Sequence[Invoice]) -> InvoiceDraft:
        """Turn billing events due by the target date into a fresh draft.

        Events already billed on an earlier invoice (same subscription, type and service
        period) are skipped, so a redelivered notification rebuilds an empty draft.
        """
        events: Sequence[BillingEvent] = await self._billing_source.billing_events(
            request.account_id, request.target_date
        )
        billed = {item.billing_key for invoice in prior_invoices for item in invoice.items if item.billing_key}
        currency = self._resolve_currency(events, prior_invoices)
        draft = InvoiceDraft(
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            currency=currency,
        )
        skipped = 0
        for event in events:
            if event.start_date > request.target_date:
                continue
            key = billing_key(event)
            if key in billed:
                skipped += 1
                continue
            if event.currency != currency:
                raise InvoiceValidationError(
                    f"billing event currency {event.currency} does not match account currency {currency}"
                )
            draft.items.append(
                InvoiceItem(
                    item_type=InvoiceItemType(event.item_type),
                    account_id=request.account_id,
                    subscription_id=event.subscription_id,
                    amount=Decimal(event.amount),
                    currency=event.currency,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    description=event.description,
                    billing_key=key,
                )
            )
        logger.debug(
            "invoice_draft_built account_id=%s target_date=%s items=%s already_billed=%s",
            request.account_id,
            request.target_date.isoformat(),
            len(draft.items),
            skipped,
        )
        return draft

    def _resolve_currency(self, events: Sequence[BillingEvent], prior_invoices: Sequence[Invoice]) -> str:
        if events:
            return events[0].currency
        if prior_invoices:
            return prior_invoices[-1].currency
        return self._default_currency

    def merge_plugin_items(
        self,
        draft: InvoiceDraft,
        plugin_items: Sequence[InvoiceItem],
        prior_invoices: Sequence[Invoice],
    ) -> MergeOutcome:
        """Apply plugin items to the draft.

        Rules, first match wins:

        * id of an item persisted by an earlier run: overwrite that item on its own invoice;
        * id of a draft item: rewrite the draft item's description, details, linkage and
          amount, except CBA_ADJ items which are recomputed on every run;
        * invoice id of an earlier invoice: add the item to that invoice;
        * anything else: append to the draft.
        """
        outcome = MergeOutcome()
        persisted = {item.id: item for invoice in prior_invoices for item in invoice.items}
        prior_ids = {invoice.id for invoice in prior_invoices}
        for item in plugin_items:
            existing = persisted.get(item.id)
            if existing is not None:
                outcome.updated_items.append(
                    existing.copy(
                        amount=Decimal(item.amount),
                        description=item.description,
                        linked_item_id=item.linked_item_id,
                        details=item.details,
                        end_date=item.end_date or existing.end_date,
                    )
                )
                continue
            current = draft.find_item(item.id)
            if current is not None:
                if current.item_type is InvoiceItemType.CBA_ADJ:
                    continue
                current.description = item.description
                current.details = item.details
                current.linked_item_id = item.linked_item_id
                current.amount = Decimal(item.amount)
                outcome.rewritten += 1
                continue
            self._route_new_item(draft, item, prior_ids, outcome)
        logger.info(
            "plugin_items_merged account_id=%s appended=%s rewritten=%s updated=%s adjustments_added=%s",
            draft.account_id,
            outcome.appended,
            outcome.rewritten,
            len(outcome.updated_items),
            outcome.adjustments_added,
        )
        return outcome

    def _route_new_item(
        self,
        draft: InvoiceDraft,
        item: InvoiceItem,
        prior_ids: set[str],
        outcome: MergeOutcome,
    ) -> None:
        if item.invoice_id and item.invoice_id in prior_ids:
            target = item.invoice_id
            outcome.prior_additions[target].append(item.copy(amount=Decimal(item.amount), billing_key=None))
        else:
            target = draft.id
            draft.items.append(item.copy(invoice_id=None, amount=Decimal(item.amount), billing_key=None))
        outcome.appended += 1
        if item.item_type in ADJUSTMENT_ITEM_TYPES:
            outcome.adjustments_added = True
            outcome.adjusted_invoice_ids.add(target)

    async def rebalance_credits(
        self,
        draft: InvoiceDraft,
        outcome: MergeOutcome,
        prior_invoices: Sequence[Invoice],
    ) -> None:
        # Credit rebalancing is external; its trigger point is an adjustment added this run.
        if not outcome.adjustments_added:
            return
        credit_items = await self._rebalancer.rebalance(draft)
        prior_ids = {invoice.id for invoice in prior_invoices}
        for item in credit_items or []:
            if item.invoice_id and item.invoice_id in prior_ids:
                outcome.prior_additions[item.invoice_id].append(item)
            else:
                draft.items.append(item.copy(invoice_id=None))
        logger.info(
            "credit_rebalanced account_id=%s credit_items=%s", draft.account_id, len(credit_items or [])
        )

    def finalize(
        self,
        draft: InvoiceDraft,
        outcome: MergeOutcome,
        prior_invoices: Sequence[Invoice],
    ) -> InvoiceDraft:
        """Validate linkage over the merged state and return the draft ready for grouping.

        TAX links must resolve inside the item's own invoice; adjustments may also point at
        any item of the account's earlier invoices.
        """
        draft_ids = set(draft.item_ids())
        if len(draft_ids) != len(draft.items):
            raise InvoiceValidationError(f"draft {draft.id} contains duplicate item ids")
        by_invoice = {invoice.id: {item.id for item in invoice.items} for invoice in prior_invoices}
        for invoice_id, items in outcome.prior_additions.items():
            by_invoice.setdefault(invoice_id, set()).update(item.id for item in items)
        account_ids = set(draft_ids)
        for ids in by_invoice.values():
            account_ids.update(ids)

        for item in draft.items:
            if item.currency != draft.currency:
                raise InvoiceValidationError(f"item {item.id} currency {item.currency} differs from {draft.currency}")
            self._check_linkage(item, draft_ids, account_ids)
        for invoice_id, items in outcome.prior_additions.items():
            for item in items:
                self._check_linkage(item, by_invoice[invoice_id], account_ids)
        for item in outcome.updated_items:
            self._check_linkage(item, by_invoice.get(item.invoice_id or "", set()), account_ids)
        return draft

    @staticmethod
    def _check_linkage(item: InvoiceItem, same_invoice_ids: set[str], account_ids: set[str]) -> None:
        if item.linked_item_id is None or item.item_type not in LINKED_ITEM_TYPES:
            return
        if item.linked_item_id in same_invoice_ids:
            return
        if item.item_type in ADJUSTMENT_ITEM_TYPES and item.linked_item_id in account_ids:
            return
        raise InvoiceValidationError(
            f"{item.item_type.value} item {item.id} links to unknown item {item.linked_item_id}"
        )
