# insulinlog/core/logging_utils.py
from __future__ import annotations

import logging
import os
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s — %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(cfg: Any) -> logging.Logger:
    """
    Configure logging:
    - Console shows LOG_LEVEL (INFO by default) and above.
    - Audit log file stores DEBUG and above (every scan, decision and write of every tick).
    """
    path = getattr(cfg, "AUDIT_LOG_FILE", "logs/audit.log")
    log_dir = os.path.dirname(path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger("insulinlog")
    root.setLevel(logging.DEBUG)

    fmt = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    fh = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=10, encoding="utf-8")
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(getattr(cfg, "LOG_LEVEL", "INFO"))

    root.handlers.clear()
    root.addHandler(fh)
    root.addHandler(ch)

    # APScheduler logs every job run at INFO; SQLAlchemy/httpx are noisy below WARNING
    for name in ("apscheduler", "sqlalchemy.engine", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _fmt(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return repr(value.value)
    return repr(value)


def kv(**kwargs: Any) -> str:
    """Key=value compact formatting (datetimes as ISO, enums by value, the rest repr()'d)."""
    return " ".join(f"{k}={_fmt(v)}" for k, v in kwargs.items())
