"""Loguru logging setup."""

import os
import sys

from loguru import logger


def setup_logging(level: str | None = None) -> None:
    """Configure the loguru stderr sink."""
    # An explicit level wins over LOG_LEVEL; loguru only accepts upper-case names.
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    logger.remove()  # replaces loguru's default stderr handler
    logger.add(
        sys.stderr,
        format="<level>{time:YYYY-MM-DD HH:mm:ss} | {name}:{function}:{line} | {message}",
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )


if __name__ == "__main__":
    setup_logging()
