from __future__ import annotations

import logging

from datapilot.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; API and worker entrypoints both call this.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep driver chatter out of request logs unless debugging the driver itself.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
    _configured = True
