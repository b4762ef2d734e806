from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from invoicerun.core.config import get_settings
from invoicerun.services.invoicing.factory import get_coordinator
from invoicerun.services.notifications.poller import enqueue_due_invoice_runs

logger = logging.getLogger(__name__)


async def process_invoice_notification(ctx, notification_id: str) -> str:
    # One claimed notification per job; the coordinator owns lease, plugin calls and bookkeeping.
    result = await get_coordinator().process_notification(notification_id)
    return "skipped" if result is None else result.state.value.lower()


async def _scheduler_loop() -> None:
    # Claim due notifications on a bounded cadence and hand them to the queue.
    settings = get_settings()
    interval_s = max(1, int(settings.invoice_worker_poll_interval_s))
    batch = max(1, int(settings.invoice_due_batch_size))
    while True:
        try:
            await enqueue_due_invoice_runs(get_coordinator(), limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("invoice due-notification scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    ctx["coordinator"] = get_coordinator()
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.invoice_queue_name
    # Redelivery is driven by claim expiry, not by arq retries.
    max_tries = 1
    max_jobs = max(1, int(settings.run_max_concurrency))
    functions = [process_invoice_notification]
    on_startup = _startup
    on_shutdown = _shutdown
