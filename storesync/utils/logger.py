# storesync/utils/logger.py
import logging
import os
import sys

LOGGER_NAME = "storesync"
FORMAT = "[%(asctime)s][%(levelname)s] %(message)s"
DATEFMT = "%H:%M:%S"

LEVELS = {"ERROR": logging.ERROR, "WARN": logging.WARNING, "INFO": logging.INFO,
          "DEBUG": logging.DEBUG, "NONE": logging.CRITICAL + 10}

logger = logging.getLogger(LOGGER_NAME)


def configure(level: str | None = None, handlers: list[logging.Handler] | None = None) -> logging.Logger:
    """Attach a stdout handler (plus any inherited ones, e.g. gunicorn's) to the package logger."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(LEVELS.get(level_name, logging.INFO))

    for h in handlers or []:
        if h not in logger.handlers:
            logger.addHandler(h)

    if not any(getattr(h, "_storesync_stdout", False) for h in logger.handlers):
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(logging.Formatter(FORMAT, DATEFMT))
        sh._storesync_stdout = True
        logger.addHandler(sh)
    return logger


def debug(msg): logger.debug(msg)
def info(msg):  logger.info(msg)
def warn(msg):  logger.warning(msg)
def error(msg): logger.error(msg)
def exception(msg): logger.exception(msg)
