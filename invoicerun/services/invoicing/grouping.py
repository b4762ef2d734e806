from __future__ import annotations

import logging
from uuid import uuid4

from invoicerun.domain.invoices import GroupingResult, InvoiceDraft
from invoicerun.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def grouping_violation(draft: InvoiceDraft, grouping: GroupingResult) -> str | None:
    """Describe why ``grouping`` cannot partition ``draft``, or return None when it can."""
    if not grouping.groups:
        return "grouping has no groups"
    source_ids = set(draft.item_ids())
    seen: dict[str, str] = {}
    for group_id, item_ids in grouping.groups.items():
        for item_id in item_ids:
            if item_id not in source_ids:
                return f"group {group_id} references unknown item {item_id}"
            if item_id in seen:
                return f"item {item_id} appears in groups {seen[item_id]} and {group_id}"
            seen[item_id] = group_id
    uncovered = source_ids - set(seen)
    if uncovered:
        return f"{len(uncovered)} item(s) not covered by any group"
    return None


def split_invoice(draft: InvoiceDraft, grouping: GroupingResult | None) -> list[InvoiceDraft]:
    """Partition the draft into one draft per non-empty group.

    Invalid groupings fall back to the single source draft; splitting never fails a run.
    Item order inside each group follows the source order and linked item ids are kept
    verbatim. Keeping a linked item next to its target is the grouping supplier's job.
    """
    if grouping is None:
        return [draft]
    violation = grouping_violation(draft, grouping)
    if violation is not None:
        increment_counter("invoice_grouping_fallback_total")
        logger.warning(
            "invoice_grouping_invalid account_id=%s draft_id=%s reason=%s",
            draft.account_id,
            draft.id,
            violation,
        )
        return [draft]
    non_empty = [(group_id, item_ids) for group_id, item_ids in grouping.groups.items() if item_ids]
    if len(non_empty) <= 1:
        return [draft]
    group_of = {item_id: group_id for group_id, item_ids in non_empty for item_id in item_ids}
    drafts: dict[str, InvoiceDraft] = {}
    for group_id, _ in non_empty:
        drafts[group_id] = InvoiceDraft(
            account_id=draft.account_id,
            tenant_id=draft.tenant_id,
            target_date=draft.target_date,
            currency=draft.currency,
            id=uuid4().hex,
        )
    for item in draft.items:
        drafts[group_of[item.id]].items.append(item)
    logger.info(
        "invoice_split account_id=%s draft_id=%s groups=%s",
        draft.account_id,
        draft.id,
        len(drafts),
    )
    return list(drafts.values())
