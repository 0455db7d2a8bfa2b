# logs.py - SurveyDesk
# Root logger setup shared by the Flask app, CLI commands and gunicorn.

from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    global _configured
    if _configured:
        return
    try:
        from config import LOG_LEVEL
    except Exception:
        LOG_LEVEL = "INFO"
    level_name = (level or LOG_LEVEL or "INFO").upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    _configured = True
