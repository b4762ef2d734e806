from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping
from uuid import uuid4


DRY_RUN_CUR_DATE_PROPERTY = "DRY_RUN_CUR_DATE"
DRY_RUN_TARGET_DATE_PROPERTY = "DRY_RUN_TARGET_DATE"


class InvoiceItemType(str, Enum):
    FIXED = "FIXED"
    RECURRING = "RECURRING"
    USAGE = "USAGE"
    EXTERNAL_CHARGE = "EXTERNAL_CHARGE"
    TAX = "TAX"
    ITEM_ADJ = "ITEM_ADJ"
    CBA_ADJ = "CBA_ADJ"
    REPAIR_ADJ = "REPAIR_ADJ"
    CREDIT_ADJ = "CREDIT_ADJ"


# Item types whose linked_item_id must resolve to a known item.
LINKED_ITEM_TYPES = frozenset(
    {InvoiceItemType.TAX, InvoiceItemType.ITEM_ADJ, InvoiceItemType.REPAIR_ADJ}
)
# Adjustments may point at items persisted on an earlier invoice.
ADJUSTMENT_ITEM_TYPES = frozenset({InvoiceItemType.ITEM_ADJ, InvoiceItemType.REPAIR_ADJ})


class DryRunType(str, Enum):
    TARGET_DATE = "TARGET_DATE"
    UPCOMING_INVOICE = "UPCOMING_INVOICE"


class RunOrigin(str, Enum):
    NEXT_BILLING_DATE = "next_billing_date"
    RETRY = "retry"
    MANUAL = "manual"
    DRY_RUN = "dry_run"


@dataclass(frozen=True, slots=True)
class PluginProperty:
    key: str
    value: str | None
    is_updatable: bool = False


@dataclass(frozen=True, slots=True)
class DryRunArguments:
    dry_run_type: DryRunType = DryRunType.TARGET_DATE


@dataclass(slots=True)
class InvoiceItem:
    item_type: InvoiceItemType
    account_id: str
    amount: Decimal
    currency: str
    start_date: date
    end_date: date | None = None
    subscription_id: str | None = None
    linked_item_id: str | None = None
    description: str | None = None
    details: str | None = None
    invoice_id: str | None = None
    # Set only on items built from billing events; plugins cannot change it.
    billing_key: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def copy(self, **changes) -> InvoiceItem:
        return replace(self, **changes)


@dataclass(slots=True)
class InvoiceDraft:
    """Mutable working set of one generation run; never shared across runs."""

    account_id: str
    tenant_id: str
    target_date: date
    currency: str
    items: list[InvoiceItem] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid4().hex)

    def item_ids(self) -> list[str]:
        return [item.id for item in self.items]

    def find_item(self, item_id: str) -> InvoiceItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    @property
    def amount(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))


@dataclass(frozen=True, slots=True)
class Invoice:
    id: str
    account_id: str
    tenant_id: str
    target_date: date
    currency: str
    items: tuple[InvoiceItem, ...]
    created_at: datetime | None = None
    is_dry_run: bool = False

    @property
    def amount(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))

    @property
    def balance(self) -> Decimal:
        # Credit items consume the positive balance; payment is requested only for what remains.
        return max(self.amount, Decimal("0"))


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    account_id: str
    tenant_id: str
    target_date: date
    properties: tuple[PluginProperty, ...] = ()
    origin: RunOrigin = RunOrigin.MANUAL
    is_dry_run: bool = False
    dry_run_arguments: DryRunArguments | None = None
    is_rescheduled: bool = False
    retry_count: int = 0
    notification_id: str | None = None

    @property
    def is_queue_driven(self) -> bool:
        return self.origin in (RunOrigin.NEXT_BILLING_DATE, RunOrigin.RETRY)


@dataclass(frozen=True, slots=True)
class PriorCallResult:
    is_aborted: bool = False
    reschedule_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class GroupingResult:
    groups: Mapping[str, frozenset[str]]

    @classmethod
    def from_groups(cls, groups: Mapping[str, Iterable[str]]) -> GroupingResult:
        return cls(groups={str(key): frozenset(value) for key, value in groups.items()})


@dataclass(frozen=True, slots=True)
class InvoiceContext:
    """Read-only view handed to plugin lifecycle calls."""

    account_id: str
    tenant_id: str
    target_date: date
    is_dry_run: bool
    is_rescheduled: bool
    retry_count: int
    existing_invoices: tuple[Invoice, ...] = ()
    invoice: Invoice | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RetryState:
    account_id: str
    retry_count: int
    next_attempt_at: datetime
    original_request: GenerationRequest


@dataclass(frozen=True, slots=True)
class BillingEvent:
    """Billable charge or usage produced by the entitlement/usage collaborators."""

    subscription_id: str | None
    item_type: InvoiceItemType
    amount: Decimal
    currency: str
    start_date: date
    end_date: date | None = None
    description: str | None = None
