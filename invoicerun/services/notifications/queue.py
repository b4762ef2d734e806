from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoicerun.core.config import (
    DEAD_LETTER_QUEUE,
    NEXT_BILLING_DATE_QUEUE,
    NEXT_BILLING_DATE_RETRY_QUEUE,
    get_settings,
)
from invoicerun.domain.models import ScheduledNotification
from invoicerun.domain.payloads import InvoiceNotificationPayload
from invoicerun.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DLQ = "dlq"

POLLED_QUEUES = (NEXT_BILLING_DATE_QUEUE, NEXT_BILLING_DATE_RETRY_QUEUE)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_window_start(*, effective_at: datetime, window_seconds: int) -> datetime:
    # Round to a stable bucket boundary so colliding schedules for one account map to one key.
    bucket = max(1, int(window_seconds))
    epoch = int(effective_at.timestamp())
    rounded = epoch - (epoch % bucket)
    return datetime.fromtimestamp(rounded, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class ClaimedNotification:
    id: str
    queue_name: str
    account_id: str
    tenant_id: str
    effective_at: datetime
    claim_token: str
    attempt_count: int


async def insert_if_absent(
    session: AsyncSession,
    *,
    queue_name: str,
    payload: InvoiceNotificationPayload,
    effective_at: datetime,
    window_start: datetime | None = None,
) -> ScheduledNotification | None:
    """Schedule a notification unless one is already pending for the same key and window.

    Returns the new row, or ``None`` when an existing notification keeps its slot. The
    unique index on (queue, account, window) backs the pre-check for concurrent writers.
    """
    window = window_start or dedupe_window_start(
        effective_at=effective_at,
        window_seconds=get_settings().notification_window_s,
    )
    existing = (
        await session.execute(
            select(ScheduledNotification.id).where(
                ScheduledNotification.queue_name == queue_name,
                ScheduledNotification.account_id == payload.account_id,
                ScheduledNotification.window_start == window,
                ScheduledNotification.status != STATUS_DLQ,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        increment_counter(f"notification_insert_conflict_total.{queue_name}")
        logger.info(
            "notification_insert_skipped queue=%s account_id=%s window_start=%s existing_id=%s",
            queue_name,
            payload.account_id,
            window.isoformat(),
            existing,
        )
        return None
    row = ScheduledNotification(
        id=uuid4().hex,
        queue_name=queue_name,
        account_id=payload.account_id,
        tenant_id=payload.tenant_id,
        effective_at=effective_at,
        window_start=window,
        payload_json=payload.model_dump(mode="json"),
        status=STATUS_PENDING,
        attempt_count=0,
    )
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # Lost the race to a concurrent writer; the winner's row stands.
        increment_counter(f"notification_insert_conflict_total.{queue_name}")
        return None
    logger.info(
        "notification_scheduled queue=%s account_id=%s effective_at=%s id=%s",
        queue_name,
        row.account_id,
        effective_at.isoformat(),
        row.id,
    )
    return row


async def consume(session: AsyncSession, notification_id: str) -> bool:
    # Deletion is the consumption marker; it commits with the caller's transaction.
    result = await session.execute(
        delete(ScheduledNotification).where(ScheduledNotification.id == notification_id)
    )
    await session.flush()
    return bool(result.rowcount)


async def cancel_by_key(
    session: AsyncSession,
    *,
    queue_name: str,
    account_id: str,
    window_start: datetime | None = None,
) -> int:
    stmt = delete(ScheduledNotification).where(
        ScheduledNotification.queue_name == queue_name,
        ScheduledNotification.account_id == account_id,
        ScheduledNotification.status != STATUS_DLQ,
    )
    if window_start is not None:
        stmt = stmt.where(ScheduledNotification.window_start == window_start)
    result = await session.execute(stmt)
    await session.flush()
    return int(result.rowcount or 0)


async def list_pending(
    session: AsyncSession,
    *,
    queue_name: str,
    account_id: str | None = None,
    tenant_id: str | None = None,
) -> list[ScheduledNotification]:
    # Search keys are account scope and tenant scope; claimed rows still count as pending.
    stmt = select(ScheduledNotification).where(
        ScheduledNotification.queue_name == queue_name,
        ScheduledNotification.status != STATUS_DLQ,
    )
    if account_id is not None:
        stmt = stmt.where(ScheduledNotification.account_id == account_id)
    if tenant_id is not None:
        stmt = stmt.where(ScheduledNotification.tenant_id == tenant_id)
    stmt = stmt.order_by(ScheduledNotification.effective_at.asc(), ScheduledNotification.created_at.asc())
    return list((await session.execute(stmt)).scalars().all())


async def next_pending(session: AsyncSession, *, queue_name: str, account_id: str) -> ScheduledNotification | None:
    rows = await list_pending(session, queue_name=queue_name, account_id=account_id)
    return rows[0] if rows else None


async def list_dead_letters(session: AsyncSession, *, account_id: str | None = None) -> list[ScheduledNotification]:
    stmt = select(ScheduledNotification).where(ScheduledNotification.queue_name == DEAD_LETTER_QUEUE)
    if account_id is not None:
        stmt = stmt.where(ScheduledNotification.account_id == account_id)
    return list((await session.execute(stmt.order_by(ScheduledNotification.updated_at.asc()))).scalars().all())


async def claim_due(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[ClaimedNotification]:
    """Claim due notifications from both polled queues in effective-time order.

    A ``processing`` claim older than ``notification_claim_lease_s`` is treated as abandoned
    (worker crashed before commit) and is claimed again. Commits the claim.
    """
    settings = get_settings()
    now = now or _utc_now()
    limit = limit or settings.invoice_due_batch_size
    stale_cutoff = now - timedelta(seconds=max(1, int(settings.notification_claim_lease_s)))
    rows = (
        await session.execute(
            select(ScheduledNotification)
            .where(
                ScheduledNotification.queue_name.in_(POLLED_QUEUES),
                ScheduledNotification.effective_at <= now,
                or_(
                    ScheduledNotification.status == STATUS_PENDING,
                    (ScheduledNotification.status == STATUS_PROCESSING)
                    & (ScheduledNotification.claimed_at <= stale_cutoff),
                ),
            )
            .order_by(ScheduledNotification.effective_at.asc(), ScheduledNotification.created_at.asc())
            .limit(max(1, int(limit)))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    claimed: list[ClaimedNotification] = []
    for row in rows:
        token = uuid4().hex
        if row.status == STATUS_PROCESSING:
            increment_counter("notification_claim_expired_total")
            logger.warning("notification_claim_expired id=%s account_id=%s", row.id, row.account_id)
        row.status = STATUS_PROCESSING
        row.claimed_at = now
        row.claim_token = token
        row.attempt_count = int(row.attempt_count or 0) + 1
        row.updated_at = now
        claimed.append(
            ClaimedNotification(
                id=row.id,
                queue_name=row.queue_name,
                account_id=row.account_id,
                tenant_id=row.tenant_id,
                effective_at=row.effective_at,
                claim_token=token,
                attempt_count=row.attempt_count,
            )
        )
    await session.commit()
    return claimed


async def load_for_processing(session: AsyncSession, notification_id: str) -> ScheduledNotification | None:
    # Re-read under a row lock inside the run transaction; None means another run consumed it.
    row = (
        await session.execute(
            select(ScheduledNotification)
            .where(
                ScheduledNotification.id == notification_id,
                ScheduledNotification.status != STATUS_DLQ,
            )
            .with_for_update()
        )
    ).scalar_one_or_none()
    return row


async def release_claim(session: AsyncSession, notification_id: str, *, error: str | None = None) -> None:
    # Hand the row back to the poller, e.g. when the account lease is busy.
    row = await session.get(ScheduledNotification, notification_id)
    if row is None or row.status == STATUS_DLQ:
        return
    row.status = STATUS_PENDING
    row.claimed_at = None
    row.claim_token = None
    row.last_error = error
    row.updated_at = _utc_now()
    await session.flush()


async def dead_letter(session: AsyncSession, row: ScheduledNotification, *, error: str) -> None:
    # Dead letters are kept for operators and never polled again.
    logger.warning(
        "notification_dead_lettered id=%s queue=%s account_id=%s error=%s",
        row.id,
        row.queue_name,
        row.account_id,
        error,
    )
    increment_counter(f"notification_dead_letter_total.{row.queue_name}")
    row.queue_name = DEAD_LETTER_QUEUE
    row.status = STATUS_DLQ
    row.claimed_at = None
    row.claim_token = None
    row.last_error = error[:2000]
    row.updated_at = _utc_now()
    await session.flush()
