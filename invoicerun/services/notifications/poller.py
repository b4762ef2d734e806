from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

from arq import create_pool
from arq.connections import RedisSettings

from invoicerun.core.config import get_settings
from invoicerun.services.notifications import queue
from invoicerun.services.notifications.queue import ClaimedNotification
from invoicerun.services.resilience import Bulkhead
from invoicerun.services.telemetry import increment_counter, set_gauge

if TYPE_CHECKING:
    from invoicerun.services.invoicing.coordinator import RunCoordinator


logger = logging.getLogger(__name__)

PROCESS_JOB_NAME = "process_invoice_notification"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


async def get_redis_pool():
    # Cache the arq pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.invoice_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def _group_by_account(claimed: list[ClaimedNotification]) -> dict[str, list[ClaimedNotification]]:
    # Claims arrive in effective-time order; keep that order inside each account.
    grouped: dict[str, list[ClaimedNotification]] = {}
    for row in claimed:
        grouped.setdefault(row.account_id, []).append(row)
    return grouped


async def run_due_notifications_cycle(
    coordinator: RunCoordinator,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> dict[str, int]:
    """Claim due notifications and run them in-process.

    Accounts run concurrently up to ``run_max_concurrency``; one account's notifications run
    one after another. A run that raises leaves its claim to expire and be redelivered.
    """
    settings = get_settings()
    now = now or coordinator.now()
    async with coordinator.session_factory() as session:
        claimed = await queue.claim_due(session, now=now, limit=limit)
    outcomes: Counter[str] = Counter()
    outcomes["claimed"] = len(claimed)
    set_gauge("invoice_notifications_claimed", len(claimed))
    if not claimed:
        return dict(outcomes)

    bulkhead = Bulkhead("invoice-runs", settings.run_max_concurrency)

    async def _drain(rows: list[ClaimedNotification]) -> None:
        async with bulkhead.slot():
            for row in rows:
                try:
                    result = await coordinator.process_notification(row.id)
                except Exception:  # noqa: BLE001 - keep the cycle alive; the claim expires and is retried
                    increment_counter("invoice_notification_errors_total")
                    logger.exception("invoice_notification_processing_failed id=%s account_id=%s", row.id, row.account_id)
                    outcomes["error"] += 1
                    continue
                outcomes["skipped" if result is None else result.state.value.lower()] += 1

    await asyncio.gather(*(_drain(rows) for rows in _group_by_account(claimed).values()))
    logger.info("invoice_poll_cycle %s", " ".join(f"{key}={value}" for key, value in sorted(outcomes.items())))
    return dict(outcomes)


async def enqueue_due_invoice_runs(coordinator: RunCoordinator, *, limit: int | None = None) -> int:
    # Queue mode: claim due rows and hand them to arq workers, one job per claim.
    settings = get_settings()
    async with coordinator.session_factory() as session:
        claimed = await queue.claim_due(session, now=coordinator.now(), limit=limit)
    if not claimed:
        return 0
    redis = await get_redis_pool()
    count = 0
    for row in claimed:
        job = await redis.enqueue_job(
            PROCESS_JOB_NAME,
            row.id,
            _job_id=f"invoice-run:{row.id}:{row.attempt_count}",
            _queue_name=settings.invoice_queue_name,
        )
        # arq returns None when the job id already exists; the earlier job covers this claim.
        if job is not None:
            count += 1
    increment_counter("invoice_runs_enqueued_total", count)
    return count


async def run_poll_loop(coordinator: RunCoordinator, *, stop_event: asyncio.Event | None = None) -> None:
    # Inline worker loop: poll, run, sleep; errors are logged and the loop keeps going.
    settings = get_settings()
    interval_s = max(1, int(settings.invoice_worker_poll_interval_s))
    while stop_event is None or not stop_event.is_set():
        try:
            await run_due_notifications_cycle(coordinator)
        except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in logs
            logger.exception("invoice due-notification poller failed")
        if stop_event is None:
            await asyncio.sleep(interval_s)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            pass
