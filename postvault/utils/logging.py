from __future__ import annotations

import logging
import os
from logging import Logger
from typing import Optional


def setup_logger(name: str = "postvault", logfile: Optional[str] = None, level: Optional[int] = None) -> Logger:
    if level is None:
        level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO
    if logfile is None:
        logfile = os.getenv("LOG_FILE") or None
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(ch)
        if logfile:
            fh = logging.FileHandler(logfile, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
            logger.addHandler(fh)
    return logger
