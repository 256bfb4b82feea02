"""
Logger setup for the service.

Configures loguru once at startup. All modules log through
``from loguru import logger``; records emitted by libraries on the standard
``logging`` module (uvicorn) are forwarded to loguru as well.
"""

import logging
import sys

from loguru import logger

LEVEL_COLORS = {
    "WARNING": "<yellow>",
    "ERROR": "<red>",
    "CRITICAL": "<bold><red>",
}

TEXT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | <level>{level: <7}</level> | <level>{message}</level> {extra}"


class InterceptHandler(logging.Handler):
    """Forward standard logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside of the logging module
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(debug: bool = False, json_output: bool = False) -> None:
    """
    Configure loguru for the service.

    Args:
        debug: Log DEBUG messages (certificate and engine details) when True
        json_output: Emit one JSON object per line instead of colored text
    """
    logger.remove()

    for level_name, color in LEVEL_COLORS.items():
        logger.level(level_name, color=color)

    level = "DEBUG" if debug else "INFO"
    if json_output:
        logger.add(sys.stdout, level=level, serialize=True, backtrace=debug, diagnose=False)
    else:
        logger.add(
            sys.stdout,
            format=TEXT_FORMAT,
            level=level,
            colorize=sys.stdout.isatty(),
            backtrace=debug,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.DEBUG if debug else logging.INFO, force=True)
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    if debug:
        logger.debug("DEBUG mode enabled")
