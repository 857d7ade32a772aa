"""Staging log setup."""

from __future__ import annotations

import logging
from pathlib import Path


def staging_log_path(app_dir: str | Path) -> Path:
    return Path(app_dir).resolve().parent / "logs" / "staging.log"


def staging_logger(app_dir: str | Path, debug: bool = False) -> logging.Logger:
    """
    Configure the logger for one staging job. Messages go to
    <app_dir>/../logs/staging.log, one bare message per line.
    """
    log_file = staging_log_path(app_dir)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f"stager.staging.{log_file.parent.parent.name}")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(file_handler)
    logger.propagate = False

    logger.debug("Staging log file: %s", log_file)
    return logger
