# careplan/core/logging_utils.py
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s — %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
NOISY_LOGGERS = ("apscheduler", "sqlalchemy.engine", "aiomysql")


def setup_logging(cfg: Any) -> logging.Logger:
    """
    Configure the "careplan" logger tree:
    - Console shows INFO and above.
    - Audit log file keeps DEBUG and above (every materialization, completion, prune).
    """
    log_file = getattr(cfg, "AUDIT_LOG_FILE", "careplan/logs/audit.log")
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger("careplan")
    root.setLevel(logging.DEBUG)

    fmt = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    fh = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=10, encoding="utf-8")
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(logging.INFO)

    root.handlers.clear()
    root.addHandler(fh)
    root.addHandler(ch)

    # APScheduler and SQLAlchemy log every job run / pool checkout at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def kv(**kwargs: Any) -> str:
    """Key=value compact formatting (values repr()'d for clarity)."""
    return " ".join(f"{k}={v!r}" for k, v in kwargs.items())
