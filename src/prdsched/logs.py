from __future__ import annotations

import logging
import os
from pathlib import Path

ROOT_LOGGER = "prdsched"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Attach handlers to the package logger once; repeated calls only update the level."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    logger.propagate = False

    if log_file is not None:
        target = os.path.abspath(log_file)
        has_file_handler = any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == target
            for handler in logger.handlers
        )
        if not has_file_handler:
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(log_file, encoding="utf-8")
            except OSError as exc:
                logger.warning("[logs] Cannot open log file %s: %s", log_file, exc)
            else:
                handler.setFormatter(logging.Formatter(LOG_FORMAT))
                logger.addHandler(handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger


def reset_logging() -> None:
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
