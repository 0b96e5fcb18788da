from __future__ import annotations

import logging
import sys

from skugate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    global _configured
    settings = get_settings()
    resolved = (level or settings.log_level).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, resolved, logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Quiet chatty driver loggers unless explicitly debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("arq").setLevel(logging.INFO)
    _configured = True
