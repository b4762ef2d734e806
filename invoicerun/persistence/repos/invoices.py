from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoicerun.core.errors import DatabaseError
from invoicerun.domain.invoices import Invoice, InvoiceDraft, InvoiceItem, InvoiceItemType
from invoicerun.domain.models import AccountRunState, InvoiceItemRecord, InvoiceRecord


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _flush(session: AsyncSession, message: str) -> None:
    # Item ids are global; a plugin reusing a foreign id surfaces here rather than as a driver error.
    try:
        await session.flush()
    except IntegrityError as exc:
        raise DatabaseError(message) from exc


def _to_item(record: InvoiceItemRecord) -> InvoiceItem:
    return InvoiceItem(
        id=record.id,
        item_type=InvoiceItemType(record.item_type),
        account_id=record.account_id,
        invoice_id=record.invoice_id,
        subscription_id=record.subscription_id,
        linked_item_id=record.linked_item_id,
        amount=Decimal(record.amount),
        currency=record.currency,
        start_date=record.start_date,
        end_date=record.end_date,
        description=record.description,
        details=record.details,
        billing_key=record.billing_key,
    )


def _to_invoice(record: InvoiceRecord) -> Invoice:
    return Invoice(
        id=record.id,
        account_id=record.account_id,
        tenant_id=record.tenant_id,
        target_date=record.target_date,
        currency=record.currency,
        items=tuple(_to_item(item) for item in record.items),
        created_at=record.created_at,
    )


async def save_invoice(session: AsyncSession, draft: InvoiceDraft) -> Invoice:
    # Flushes only; the caller's transaction decides whether the invoice becomes visible.
    now = _utc_now()
    items = [item.copy(invoice_id=draft.id) for item in draft.items]
    record = InvoiceRecord(
        id=draft.id,
        account_id=draft.account_id,
        tenant_id=draft.tenant_id,
        target_date=draft.target_date,
        currency=draft.currency,
        created_at=now,
        items=[
            InvoiceItemRecord(
                id=item.id,
                invoice_id=draft.id,
                account_id=item.account_id,
                item_type=item.item_type.value,
                subscription_id=item.subscription_id,
                linked_item_id=item.linked_item_id,
                amount=item.amount,
                currency=item.currency,
                start_date=item.start_date,
                end_date=item.end_date,
                description=item.description,
                details=item.details,
                billing_key=item.billing_key,
                position=position,
                created_at=now,
                updated_at=now,
            )
            for position, item in enumerate(items)
        ],
    )
    session.add(record)
    await _flush(session, f"invoice {draft.id} insert failed")
    return Invoice(
        id=draft.id,
        account_id=draft.account_id,
        tenant_id=draft.tenant_id,
        target_date=draft.target_date,
        currency=draft.currency,
        items=tuple(items),
        created_at=now,
    )


async def load_prior_invoices(session: AsyncSession, account_id: str) -> list[Invoice]:
    rows = (
        await session.execute(
            select(InvoiceRecord)
            .where(InvoiceRecord.account_id == account_id)
            .order_by(InvoiceRecord.target_date.asc(), InvoiceRecord.created_at.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return [_to_invoice(row) for row in rows]


async def get_invoice(session: AsyncSession, invoice_id: str) -> Invoice | None:
    row = (
        await session.execute(
            select(InvoiceRecord)
            .where(InvoiceRecord.id == invoice_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    return _to_invoice(row) if row is not None else None


async def count_invoices(session: AsyncSession, account_id: str, *, target_date: date | None = None) -> int:
    stmt = select(func.count()).select_from(InvoiceRecord).where(InvoiceRecord.account_id == account_id)
    if target_date is not None:
        stmt = stmt.where(InvoiceRecord.target_date == target_date)
    return int((await session.execute(stmt)).scalar_one())


async def update_persisted_item(session: AsyncSession, item: InvoiceItem) -> InvoiceItem:
    """Overwrite a persisted item with plugin-supplied values, keeping its owning invoice.

    Amount, description, linkage, details and service end date change; the id, type,
    account and invoice stay fixed.
    """
    record = await session.get(InvoiceItemRecord, item.id)
    if record is None:
        raise DatabaseError(f"invoice item {item.id} is not persisted")
    record.amount = item.amount
    record.description = item.description
    record.linked_item_id = item.linked_item_id
    record.details = item.details
    if item.end_date is not None:
        record.end_date = item.end_date
    record.updated_at = _utc_now()
    await session.flush()
    return _to_item(record)


async def append_items(session: AsyncSession, invoice_id: str, items: list[InvoiceItem]) -> list[InvoiceItem]:
    # Adjustments and credits addressed to an earlier invoice land after its existing items.
    record = await session.get(InvoiceRecord, invoice_id)
    if record is None:
        raise DatabaseError(f"invoice {invoice_id} is not persisted")
    last_position = (
        await session.execute(
            select(func.max(InvoiceItemRecord.position)).where(InvoiceItemRecord.invoice_id == invoice_id)
        )
    ).scalar_one_or_none()
    position = -1 if last_position is None else int(last_position)
    now = _utc_now()
    appended: list[InvoiceItem] = []
    for item in items:
        position += 1
        session.add(
            InvoiceItemRecord(
                id=item.id,
                invoice_id=invoice_id,
                account_id=item.account_id,
                item_type=item.item_type.value,
                subscription_id=item.subscription_id,
                linked_item_id=item.linked_item_id,
                amount=item.amount,
                currency=item.currency,
                start_date=item.start_date,
                end_date=item.end_date,
                description=item.description,
                details=item.details,
                billing_key=item.billing_key,
                position=position,
                created_at=now,
                updated_at=now,
            )
        )
        appended.append(item.copy(invoice_id=invoice_id))
    await _flush(session, f"items for invoice {invoice_id} insert failed")
    return appended


async def get_run_state(session: AsyncSession, account_id: str) -> AccountRunState | None:
    return await session.get(AccountRunState, account_id)


async def record_run_state(
    session: AsyncSession,
    *,
    account_id: str,
    tenant_id: str,
    target_date: date,
    outcome: str,
) -> AccountRunState:
    # last_target_date only moves forward; it gates redelivered older cycles.
    row = await session.get(AccountRunState, account_id)
    now = _utc_now()
    if row is None:
        row = AccountRunState(
            account_id=account_id,
            tenant_id=tenant_id,
            last_target_date=target_date,
            last_outcome=outcome,
            updated_at=now,
        )
        session.add(row)
    else:
        if target_date >= row.last_target_date:
            row.last_target_date = target_date
            row.last_outcome = outcome
        row.updated_at = now
    await session.flush()
    return row
