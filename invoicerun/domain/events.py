from __future__ import annotations

from typing import Literal, TypedDict


InvoiceEventType = Literal[
    "invoice.created",
    "invoice.adjustment",
    "invoice.payment_requested",
    "invoice.null",
]


class InvoiceEventData(TypedDict, total=False):
    invoice_id: str
    target_date: str
    currency: str
    amount: str
    balance: str
    item_count: int


class InvoiceEvent(TypedDict):
    type: InvoiceEventType
    account_id: str
    tenant_id: str
    data: InvoiceEventData
