"""
Logging configuration

Console output at LOG_LEVEL, plus a daily ingestion log and a separate
error log under LOG_DIR. Files are only created on first write, so
importing the package (tests, scripts) leaves no empty log files behind.
"""
import sys

from loguru import logger

from courier_intel.config import get_settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logger(level=None, log_dir=None):
    """(Re)configure the global loguru logger and return it."""
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_dir = log_dir or settings.log_dir

    logger.remove()

    logger.add(
        sys.stdout,
        colorize=sys.stdout.isatty(),
        format=CONSOLE_FORMAT,
        level="DEBUG" if settings.debug else level,
    )

    # Webhook traffic: one file per day
    logger.add(
        f"{log_dir}/courier_intel_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO",
        delay=True,
    )

    # Rejected webhooks and failed ingestions, kept longer for shop support
    logger.add(
        f"{log_dir}/errors_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        rotation="00:00",
        retention="90 days",
        level="WARNING",
        delay=True,
    )

    return logger


log = setup_logger()
