from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level: str | None) -> tuple[int, bool]:
    env_level = os.getenv("GANTTKIT_LOG_LEVEL", "").upper()
    is_debug = os.getenv("GANTTKIT_DEBUG", "").lower() in ("1", "true", "yes")
    if is_debug:
        return logging.DEBUG, True
    name = env_level or (level or "WARNING").upper()
    return getattr(logging, name, logging.WARNING), False


def setup_logging(level: str | None = None, log_file: str | Path | None = None) -> logging.Logger:
    """Configure the ``ganttkit`` logger; environment variables win over arguments."""
    resolved, is_debug = _resolve_level(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        logging.Formatter(
            "%(levelname)-8s [%(name)s] %(message)s" if is_debug else "%(levelname)s: %(message)s"
        )
    )
    console_handler.setLevel(resolved)

    logger = logging.getLogger("ganttkit")
    logger.setLevel(logging.DEBUG if log_file else resolved)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    if name:
        return logging.getLogger(f"ganttkit.{name}")
    return logging.getLogger("ganttkit")
