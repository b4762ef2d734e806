from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from invoicerun.core.config import NEXT_BILLING_DATE_RETRY_QUEUE, Settings, get_settings
from invoicerun.domain.invoices import GenerationRequest, RetryState, RunOrigin
from invoicerun.domain.payloads import InvoiceNotificationPayload
from invoicerun.services.notifications import queue
from invoicerun.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Every retry row of an account shares one window, so the unique index allows one per account.
RETRY_LANE_WINDOW = datetime(1970, 1, 1, tzinfo=timezone.utc)


def retry_backoff_s(retry_count: int, settings: Settings | None = None) -> float:
    # Multiplier 1.0 yields a fixed step; larger values grow geometrically up to the cap.
    settings = settings or get_settings()
    base = max(1.0, float(settings.invoice_retry_backoff_s))
    cap = max(base, float(settings.invoice_retry_backoff_max_s))
    multiplier = max(1.0, float(settings.invoice_retry_backoff_multiplier))
    exponent = max(0, int(retry_count) - 1)
    return min(cap, base * (multiplier**exponent))


def retry_budget_exhausted(retry_count: int, settings: Settings | None = None) -> bool:
    """True when scheduling retry number ``retry_count`` would exceed the configured ceiling."""
    settings = settings or get_settings()
    ceiling = int(settings.invoice_retry_max_attempts)
    return ceiling > 0 and retry_count > ceiling


def _state_from_row(row) -> RetryState:
    payload = InvoiceNotificationPayload.model_validate(row.payload_json)
    return RetryState(
        account_id=row.account_id,
        retry_count=payload.retry_count,
        next_attempt_at=row.effective_at,
        original_request=payload.to_request(notification_id=row.id),
    )


async def schedule_retry(
    session: AsyncSession,
    request: GenerationRequest,
    *,
    error: str,
    now: datetime | None = None,
) -> RetryState:
    """Replace the account's pending retry with one attempt ``backoff(retry_count)`` from now.

    Runs inside the caller's transaction; the delete and the insert commit together.
    """
    now = now or datetime.now(timezone.utc)
    retry_count = request.retry_count + 1
    next_attempt_at = now + timedelta(seconds=retry_backoff_s(retry_count))
    replaced = await queue.cancel_by_key(
        session,
        queue_name=NEXT_BILLING_DATE_RETRY_QUEUE,
        account_id=request.account_id,
    )
    payload = InvoiceNotificationPayload.from_request(
        request,
        origin=RunOrigin.RETRY,
        is_rescheduled=False,
        retry_count=retry_count,
        last_error=error[:2000],
    )
    row = await queue.insert_if_absent(
        session,
        queue_name=NEXT_BILLING_DATE_RETRY_QUEUE,
        payload=payload,
        effective_at=next_attempt_at,
        window_start=RETRY_LANE_WINDOW,
    )
    if row is None:
        # Only a concurrent writer outside the account lease can hold the slot.
        logger.warning("retry_schedule_conflict account_id=%s retry_count=%s", request.account_id, retry_count)
    increment_counter("invoice_retries_scheduled_total")
    logger.info(
        "invoice_retry_scheduled account_id=%s retry_count=%s next_attempt_at=%s replaced=%s",
        request.account_id,
        retry_count,
        next_attempt_at.isoformat(),
        replaced,
    )
    return RetryState(
        account_id=request.account_id,
        retry_count=retry_count,
        next_attempt_at=next_attempt_at,
        original_request=payload.to_request(notification_id=row.id if row is not None else None),
    )


async def clear_retry(session: AsyncSession, account_id: str) -> int:
    return await queue.cancel_by_key(
        session,
        queue_name=NEXT_BILLING_DATE_RETRY_QUEUE,
        account_id=account_id,
    )


async def pending_retry(session: AsyncSession, account_id: str) -> RetryState | None:
    row = await queue.next_pending(session, queue_name=NEXT_BILLING_DATE_RETRY_QUEUE, account_id=account_id)
    if row is None:
        return None
    return _state_from_row(row)
