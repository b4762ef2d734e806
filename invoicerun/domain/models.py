from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on round-trip; values are normalized to UTC on bind and
    re-tagged as UTC on load so comparisons never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ScheduledNotification(Base):
    __tablename__ = "scheduled_notifications"
    __table_args__ = (
        # At most one live notification per (queue, account, effective window); dead letters are exempt.
        Index(
            "uq_scheduled_notifications_window",
            "queue_name",
            "account_id",
            "window_start",
            unique=True,
            postgresql_where=text("status <> 'dlq'"),
            sqlite_where=text("status <> 'dlq'"),
        ),
        Index("ix_scheduled_notifications_due", "status", "effective_at"),
        Index("ix_scheduled_notifications_search", "account_id", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    queue_name: Mapped[str] = mapped_column(String)
    # Search keys: account scope and tenant scope.
    account_id: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String)
    effective_at: Mapped[datetime] = mapped_column(UTCDateTime())
    window_start: Mapped[datetime] = mapped_column(UTCDateTime())
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # pending -> processing -> (deleted on consumption | dlq)
    status: Mapped[str] = mapped_column(String, default="pending")
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now, onupdate=_utc_now)


class InvoiceRecord(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_account_target", "account_id", "target_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    target_date: Mapped[date] = mapped_column(Date)
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)

    items: Mapped[list[InvoiceItemRecord]] = relationship(
        back_populates="invoice",
        order_by="InvoiceItemRecord.position",
        lazy="selectin",
    )


class InvoiceItemRecord(Base):
    __tablename__ = "invoice_items"

    # Plugin-supplied ids are kept verbatim so later runs can update the same item.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String, ForeignKey("invoices.id"), index=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    item_type: Mapped[str] = mapped_column(String)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 9))
    currency: Mapped[str] = mapped_column(String(3))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now, onupdate=_utc_now)

    invoice: Mapped[InvoiceRecord] = relationship(back_populates="items")


class AccountRunState(Base):
    __tablename__ = "account_run_states"

    # Last completed cycle per account; older cycles redelivered afterwards are stale.
    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    last_target_date: Mapped[date] = mapped_column(Date)
    last_outcome: Mapped[str] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now, onupdate=_utc_now)
