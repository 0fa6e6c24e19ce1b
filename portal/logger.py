"""Centralized logging with rotation for the portal process."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from portal.config import Settings, settings as default_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s"


def init_logging(cfg: Settings | None = None, *, to_file: bool = True) -> logging.Logger:
    cfg = cfg or default_settings
    level = getattr(logging, cfg.log_level, logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")

    logger = logging.getLogger("portal")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    log_path = None
    if to_file:
        os.makedirs(cfg.log_dir, exist_ok=True)
        log_path = os.path.join(cfg.log_dir, "portal.log")
        file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logging initialized path=%s level=%s", log_path or "-", cfg.log_level)
    return logger
