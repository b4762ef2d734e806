from __future__ import annotations

import asyncio
import sys

from invoicerun.core.logging import configure_logging
from invoicerun.persistence.db import drop_models, engine, init_models


async def _main(reset: bool) -> None:
    configure_logging()
    if reset:
        await drop_models()
    await init_models()
    await engine.dispose()
    print("invoicerun schema ready")


if __name__ == "__main__":
    asyncio.run(_main("--reset" in sys.argv[1:]))
