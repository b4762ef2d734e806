from __future__ import annotations

import logging

from invoicerun.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; entry scripts call this before starting loops.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    # SQL echo is noisy at INFO; keep engine logs at warning unless explicitly debugging.
    if resolved != "DEBUG":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger(settings.app_name).setLevel(resolved)
