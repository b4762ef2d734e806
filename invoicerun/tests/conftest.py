from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time; point them at a throwaway SQLite file first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="invoicerun-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "INVOICERUN_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/invoicerun.db"
)
os.environ["INVOICE_EXECUTION_MODE"] = "inline"
os.environ["RUN_MAX_CONCURRENCY"] = "1"
os.environ["ACCOUNT_LOCK_WAIT_S"] = "0.05"
os.environ["EXT_RETRY_BACKOFF_MS"] = "1"

import pytest  # noqa: E402

from invoicerun.core.config import get_settings  # noqa: E402
from invoicerun.persistence.db import drop_models, engine, init_models  # noqa: E402
from invoicerun.services.invoicing.factory import reset_coordinator  # noqa: E402
from invoicerun.services.telemetry import reset_telemetry  # noqa: E402
from invoicerun.tests.utils.harness import InvoiceHarness, build_harness  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose the engine so pooled connections never cross event loops.
    await init_models()
    yield
    await drop_models()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    reset_telemetry()
    reset_coordinator()
    yield
    get_settings.cache_clear()
    reset_coordinator()


@pytest.fixture
def harness() -> InvoiceHarness:
    return build_harness()
