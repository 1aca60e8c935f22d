"""
Logging configuration for Account Guard.

Console output plus a daily application log and a WARNING+ error log,
so lock transitions and propagation failures can be reviewed separately.
"""

import sys
from datetime import datetime

from loguru import logger

from src import config

LOGS_DIR = config.LOGS_DIR
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOG_LEVEL = config.get("LOG_LEVEL", "DEBUG").upper()
LOG_FILE = LOGS_DIR / f"account_guard_{datetime.now().strftime('%Y-%m-%d')}.log"
ERROR_LOG_FILE = LOGS_DIR / f"errors_{datetime.now().strftime('%Y-%m-%d')}.log"

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

LOG_FORMAT_FILE = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging():
    """Replace loguru's default sink with console, file and error-file sinks."""
    logger.remove()

    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=LOG_LEVEL,
        colorize=True,
        backtrace=True,
        diagnose=config.ENVIRONMENT != "production",
    )

    logger.add(
        LOG_FILE,
        format=LOG_FORMAT_FILE,
        level=LOG_LEVEL,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        backtrace=True,
        diagnose=False,
        enqueue=True,  # Thread-safe; scheduler and propagation workers log too
    )

    logger.add(
        ERROR_LOG_FILE,
        format=LOG_FORMAT_FILE,
        level="WARNING",
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        backtrace=True,
        diagnose=False,
        enqueue=True,
    )

    logger.info(f"Logging initialized. Log file: {LOG_FILE}")
    return logger


# Initialize logging on import
setup_logging()
