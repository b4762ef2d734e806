from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from invoicerun.core.errors import InvoiceValidationError
from invoicerun.domain.invoices import (
    BillingEvent,
    GenerationRequest,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
)
from invoicerun.services.invoicing.assembler import InvoiceAssembler
from invoicerun.tests.utils.fakes import MonthlyBillingSource, ScriptedRebalancer


REQUEST = GenerationRequest(account_id="acct-1", tenant_id="t1", target_date=date(2012, 5, 1))


def _item(item_id: str, item_type: InvoiceItemType, amount: str = "10", **fields) -> InvoiceItem:
    return InvoiceItem(
        id=item_id,
        item_type=item_type,
        account_id="acct-1",
        amount=Decimal(amount),
        currency="USD",
        start_date=date(2012, 4, 1),
        **fields,
    )


def _prior_invoice() -> Invoice:
    return Invoice(
        id="inv-1",
        account_id="acct-1",
        tenant_id="t1",
        target_date=date(2012, 4, 1),
        currency="USD",
        items=(
            _item("fixed-1", InvoiceItemType.FIXED, "0", subscription_id="sub-1", invoice_id="inv-1"),
            _item("ext-1", InvoiceItemType.EXTERNAL_CHARGE, invoice_id="inv-1"),
        ),
    )


class _ListSource:
    def __init__(self, events) -> None:
        self._events = events

    async def billing_events(self, account_id, target_date):
        return self._events

    async def next_billing_date(self, account_id, after):
        return None


@pytest.mark.asyncio
async def test_build_draft_skips_already_billed_and_future_events() -> None:
    assembler = InvoiceAssembler(MonthlyBillingSource())
    # The trial was billed earlier; a plugin has since rewritten its amount.
    prior = Invoice(
        id="inv-1",
        account_id="acct-1",
        tenant_id="t1",
        target_date=date(2012, 4, 1),
        currency="USD",
        items=(
            InvoiceItem(
                id="fixed-1",
                item_type=InvoiceItemType.FIXED,
                account_id="acct-1",
                subscription_id="sub-1",
                amount=Decimal("-5"),
                currency="USD",
                start_date=date(2012, 4, 1),
                invoice_id="inv-1",
                billing_key="FIXED:sub-1:2012-04-01:-",
            ),
        ),
    )
    draft = await assembler.build_draft(REQUEST, [prior])

    assert [(item.item_type, item.start_date) for item in draft.items] == [
        (InvoiceItemType.RECURRING, date(2012, 5, 1))
    ]
    assert draft.items[0].billing_key == "RECURRING:sub-1:2012-05-01:2012-06-01"
    assert draft.currency == "USD"


@pytest.mark.asyncio
async def test_build_draft_rejects_mixed_currencies() -> None:
    events = [
        BillingEvent("sub-1", InvoiceItemType.RECURRING, Decimal("10"), "USD", date(2012, 5, 1)),
        BillingEvent("sub-2", InvoiceItemType.RECURRING, Decimal("10"), "EUR", date(2012, 5, 1)),
    ]
    with pytest.raises(InvoiceValidationError):
        await InvoiceAssembler(_ListSource(events)).build_draft(REQUEST, [])


@pytest.mark.asyncio
async def test_merge_routes_each_plugin_item_by_identity() -> None:
    assembler = InvoiceAssembler(_ListSource([]))
    prior = [_prior_invoice()]
    draft = await assembler.build_draft(REQUEST, prior)
    draft.items.append(_item("rec-1", InvoiceItemType.RECURRING, "249.95", subscription_id="sub-1"))
    draft.items.append(_item("cba-0", InvoiceItemType.CBA_ADJ, "5"))

    outcome = assembler.merge_plugin_items(
        draft,
        [
            _item("ext-1", InvoiceItemType.EXTERNAL_CHARGE, "12", description="updated"),
            _item("rec-1", InvoiceItemType.RECURRING, "200", description="discounted"),
            _item("cba-0", InvoiceItemType.CBA_ADJ, "99"),
            _item("adj-1", InvoiceItemType.ITEM_ADJ, "-10", invoice_id="inv-1", linked_item_id="ext-1"),
            _item("tax-1", InvoiceItemType.TAX, "20", linked_item_id="rec-1"),
        ],
        prior,
    )

    (updated,) = outcome.updated_items
    assert (updated.id, updated.invoice_id, updated.amount, updated.description) == (
        "ext-1",
        "inv-1",
        Decimal("12"),
        "updated",
    )
    assert draft.find_item("rec-1").amount == Decimal("200")
    assert draft.find_item("rec-1").description == "discounted"
    assert draft.find_item("cba-0").amount == Decimal("5")
    assert [item.id for item in outcome.prior_additions["inv-1"]] == ["adj-1"]
    assert draft.item_ids() == ["rec-1", "cba-0", "tax-1"]
    assert outcome.rewritten == 1
    assert outcome.appended == 2
    assert outcome.adjustments_added is True
    assert outcome.adjusted_invoice_ids == {"inv-1"}
    assert outcome.touches_prior_invoices is True

    assembler.finalize(draft, outcome, prior)


@pytest.mark.asyncio
async def test_rebalance_runs_only_after_adjustments() -> None:
    rebalancer = ScriptedRebalancer(
        factory=lambda draft: [_item("cba-1", InvoiceItemType.CBA_ADJ, "10", invoice_id="inv-1")]
    )
    assembler = InvoiceAssembler(_ListSource([]), rebalancer=rebalancer)
    prior = [_prior_invoice()]
    draft = await assembler.build_draft(REQUEST, prior)

    outcome = assembler.merge_plugin_items(draft, [], prior)
    await assembler.rebalance_credits(draft, outcome, prior)
    assert rebalancer.calls == 0

    outcome = assembler.merge_plugin_items(
        draft, [_item("adj-1", InvoiceItemType.ITEM_ADJ, "-10", invoice_id="inv-1", linked_item_id="ext-1")], prior
    )
    await assembler.rebalance_credits(draft, outcome, prior)
    assert rebalancer.calls == 1
    assert [item.id for item in outcome.prior_additions["inv-1"]] == ["adj-1", "cba-1"]


@pytest.mark.asyncio
async def test_finalize_enforces_linkage_rules() -> None:
    assembler = InvoiceAssembler(_ListSource([]))
    prior = [_prior_invoice()]

    draft = await assembler.build_draft(REQUEST, prior)
    outcome = assembler.merge_plugin_items(
        draft, [_item("tax-1", InvoiceItemType.TAX, "1", linked_item_id="ext-1")], prior
    )
    with pytest.raises(InvoiceValidationError, match="links to unknown item ext-1"):
        assembler.finalize(draft, outcome, prior)

    draft = await assembler.build_draft(REQUEST, prior)
    outcome = assembler.merge_plugin_items(
        draft, [_item("adj-9", InvoiceItemType.ITEM_ADJ, "-1", linked_item_id="ext-1")], prior
    )
    assembler.finalize(draft, outcome, prior)

    draft = await assembler.build_draft(REQUEST, prior)
    outcome = assembler.merge_plugin_items(
        draft, [_item("adj-9", InvoiceItemType.ITEM_ADJ, "-1", linked_item_id="missing")], prior
    )
    with pytest.raises(InvoiceValidationError):
        assembler.finalize(draft, outcome, prior)


@pytest.mark.asyncio
async def test_finalize_rejects_duplicate_ids() -> None:
    assembler = InvoiceAssembler(_ListSource([]))
    draft = await assembler.build_draft(REQUEST, [])
    draft.items.extend([_item("dup", InvoiceItemType.RECURRING), _item("dup", InvoiceItemType.RECURRING)])
    outcome = assembler.merge_plugin_items(draft, [], [])
    with pytest.raises(InvoiceValidationError, match="duplicate"):
        assembler.finalize(draft, outcome, [])


@pytest.mark.asyncio
async def test_plugin_items_never_count_as_billed_events() -> None:
    assembler = InvoiceAssembler(MonthlyBillingSource())
    draft = await assembler.build_draft(REQUEST, [])
    forged = _item(
        "extra-1",
        InvoiceItemType.RECURRING,
        "1",
        subscription_id="sub-1",
        billing_key="RECURRING:sub-1:2012-06-01:2012-07-01",
    )

    assembler.merge_plugin_items(draft, [forged], [])

    assert draft.find_item("extra-1").billing_key is None
