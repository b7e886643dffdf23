"""
Logging configuration, powered by **loguru**.

Library modules only do::

    from loguru import logger
    logger.info("Stored memory {}", memory_id)

Entry points (the CLI, scripts embedding the engine) call ``setup_logging()``
once to pick format, level and sinks, and to route stdlib ``logging``
records (httpx, faiss loader) through loguru.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FMT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Route stdlib ``logging`` records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the stdlib call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    *,
    intercept_stdlib: bool = True,
    log_file: str | None = None,
) -> None:
    """Configure loguru sinks for the current process.

    Args:
        level: Minimum level (``DEBUG``, ``INFO``, ``WARNING``, ...).
        intercept_stdlib: Send stdlib ``logging`` output through loguru.
        log_file: Optional path for a rotating file sink.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=_FMT,
        level=level.upper(),
        colorize=True,
        backtrace=True,
        diagnose=False,
    )
    if log_file:
        logger.add(
            log_file,
            format=_FMT,
            level=level.upper(),
            rotation="10 MB",
            retention="7 days",
            compression="gz",
        )
    if intercept_stdlib:
        logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    logger.debug("Logging configured - level={}", level)
