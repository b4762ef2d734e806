from __future__ import annotations

import asyncio

from invoicerun.core.config import get_settings
from invoicerun.core.logging import configure_logging
from invoicerun.services.invoicing.factory import get_coordinator
from invoicerun.services.notifications.poller import run_poll_loop


async def _main() -> None:
    # Inline mode runs due notifications in this process; queue mode uses `arq invoicerun.workers.invoice_worker.WorkerSettings`.
    configure_logging()
    settings = get_settings()
    if settings.invoice_execution_mode != "inline":
        raise SystemExit("invoice_execution_mode is not 'inline'; start the arq worker instead")
    await run_poll_loop(get_coordinator())


if __name__ == "__main__":
    asyncio.run(_main())
