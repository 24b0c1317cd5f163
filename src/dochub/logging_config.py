from __future__ import annotations

import logging

from dochub.config import get_settings

_LOG_CONFIGURED = False

# third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("urllib3", "sqlalchemy.engine", "multipart", "httpx")


def configure_logging(level: str | None = None) -> None:
    """Configures root logging once per process.

    Records carry the thread name, so bulk worker output can be told apart.
    """
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _LOG_CONFIGURED = True
