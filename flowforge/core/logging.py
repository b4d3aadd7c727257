from __future__ import annotations

import logging

from flowforge.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Single entry point for API, worker and scripts so log lines share one format.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_FORMAT)
    logging.getLogger().setLevel(resolved)
    # httpx logs every request at INFO; keep engine chatter out of default output.
    logging.getLogger("httpx").setLevel(logging.WARNING)
