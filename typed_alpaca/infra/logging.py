import sys
from typing import Optional

from loguru import logger

FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {message}"


def setup_logging(level: str = "INFO", log_file: Optional[str] = "logs/runtime.log"):
    logger.remove()
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="10 days",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            level=level,
            format=FORMAT,
        )
    logger.add(sys.stderr, level=level, format=FORMAT)
    return logger
