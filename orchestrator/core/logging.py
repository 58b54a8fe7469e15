"""
Logging configuration for the application.
"""

import logging
import re
import sys
from typing import Optional

from orchestrator.config import settings

# Custom Log Level
NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

# ANSI Color Codes
BLUE = "\033[0;34m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
BOLD_RED = "\033[1;31m"
RESET = "\033[0m"

DEVSERVER_LOGGER_NAME = "orchestrator.devserver"


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log records based on level."""

    # (Keyword, Color)
    KEYWORDS = [
        ("ERROR", RED),
        ("FAILED", RED),
        ("CRITICAL", BOLD_RED),
        ("WARNING", YELLOW),
        ("WARN", YELLOW),
        ("Exception", RED),
    ]

    FMT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    DATE_FMT = "%Y-%m-%d %H:%M:%S"

    FORMATS = {
        logging.DEBUG: BLUE + FMT + RESET,
        logging.INFO: FMT,
        NOTICE: "%(message)s",
        logging.WARNING: YELLOW + FMT + RESET,
        logging.ERROR: RED + FMT + RESET,
        logging.CRITICAL: BOLD_RED + FMT + RESET,
    }

    def format(self, record: logging.LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.FMT)
        formatter = logging.Formatter(log_fmt, datefmt=self.DATE_FMT)
        formatted_message = formatter.format(record)

        # Dev server output is forwarded verbatim, keyword colouring would
        # fight with the child's own ANSI sequences.
        if record.name == DEVSERVER_LOGGER_NAME:
            return formatted_message

        level_color = self.get_level_color(record.levelno)
        for keyword, color in self.KEYWORDS:
            # Word boundaries prevent partial matches (e.g. WARN in WARNINGS)
            pattern = rf"\b{re.escape(keyword)}\b"
            if re.search(pattern, formatted_message):
                replacement = f"{color}{keyword}{RESET}{level_color}"
                formatted_message = re.sub(pattern, replacement, formatted_message)

        return formatted_message

    def get_level_color(self, levelno: int) -> str:
        if levelno >= logging.CRITICAL:
            return BOLD_RED
        elif levelno >= logging.ERROR:
            return RED
        elif levelno >= logging.WARNING:
            return YELLOW
        elif levelno >= NOTICE:
            return RESET
        elif levelno >= logging.INFO:
            return RESET
        elif levelno >= logging.DEBUG:
            return BLUE
        return RESET


class UvicornAccessFilter(logging.Filter):
    """
    Filter to downgrade noisy polling endpoints to DEBUG level.
    """

    QUIET_PATHS = {
        "/health",
        "/preview/status",
    }

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if any(path in message for path in self.QUIET_PATHS):
            record.levelno = logging.DEBUG
            record.levelname = "DEBUG"
        return True


def setup_logging(name: Optional[str] = None) -> logging.Logger:
    """
    Set up and configure logging for the application.

    Args:
        name: Logger name. If None, returns the orchestrator logger.

    Returns:
        Configured logger instance.
    """
    log_level = logging.DEBUG if settings.debug_mode else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter())

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        force=True,
    )
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        log_obj = logging.getLogger(logger_name)
        log_obj.handlers = [handler]
        log_obj.propagate = False

    logging.getLogger("uvicorn.access").addFilter(UvicornAccessFilter())

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    return logging.getLogger(name or "orchestrator")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)
