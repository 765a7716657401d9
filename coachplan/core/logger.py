"""Loguru setup for the coachplan service.

Pipeline modules log structured key/values (`plan_id=`, `preview_id=`,
`code=`); the console format prints them from `{extra}`.
"""

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> | {extra}"
)


def setup_logger(level: str = "INFO", log_file: str | None = None, serialize: bool = False) -> None:
    """Replace loguru's default sink with the service sinks.

    Args:
        level: Minimum level for every sink
        log_file: Optional path for a rotating file sink (10 MB, kept 7 days)
        serialize: Emit JSON lines on stderr instead of the coloured format,
            for log collectors
    """
    logger.remove()

    if serialize:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            level=level,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            serialize=True,
        )

    logger.info("Logger initialized", level=level, log_file=log_file, serialize=serialize)
