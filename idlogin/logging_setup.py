"""Centralized logging setup using Loguru."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import settings


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    rotation: str = "50 MB",
    retention: str = "7 days",
) -> None:
    """Configure console (and optional file) logging for idlogin.

    Args:
        level: Log level; defaults to settings.LOG_LEVEL
        log_file: Optional file sink; defaults to settings.LOG_FILE
        rotation: Log rotation setting for the file sink
        retention: Retention period for rotated files
    """
    logger.remove()

    level = level or settings.LOG_LEVEL
    log_file = log_file or settings.LOG_FILE

    fmt = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

    logger.add(
        sys.stderr,
        level=level,
        format=fmt,
        diagnose=False,  # never dump locals: they may hold passwords or key material
        enqueue=True,
        catch=True,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=fmt,
            rotation=rotation,
            retention=retention,
            diagnose=False,
            enqueue=True,
            catch=True,
        )

    logger.info("Logging initialized level={} file_logging={}", level, log_file is not None)
