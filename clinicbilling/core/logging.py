from __future__ import annotations

import logging

from clinicbilling.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; API, worker and scripts share the format.
    global _configured
    if _configured:
        return
    level_name = (get_settings().log_level or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep SQL echo and HTTP client chatter out of billing logs unless debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
