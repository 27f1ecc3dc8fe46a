#!/usr/bin/env python3
"""
Centralized logging configuration for blesim.

Every module logs through `get_logger(__name__)`; only the entry point
calls `setup_logging()`. Emoji prefixes are kept for visual scanning of
peripheral traffic in the console.
"""
import logging
import sys

# Default format with emoji support
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Prefixes that already mark a message, so the level emoji is not doubled
MARKER_PREFIXES = tuple("⚠️❌💥📡🔗🔌💓📈📝")

# Loggers of third-party libraries that are too chatty at DEBUG
QUIET_LOGGERS = ("uvicorn.access", "sse_starlette.sse")


class EmojiFormatter(logging.Formatter):
    """Formatter that keeps emoji prefixes and adds level-based prefixes."""

    LEVEL_EMOJIS = {
        logging.DEBUG: "",
        logging.INFO: "",
        logging.WARNING: "⚠️ ",
        logging.ERROR: "❌ ",
        logging.CRITICAL: "💥 ",
    }

    def format(self, record: logging.LogRecord) -> str:
        emoji = self.LEVEL_EMOJIS.get(record.levelno, "")
        if emoji and not record.getMessage().strip().startswith(MARKER_PREFIXES):
            record.msg = f"{emoji}{record.msg}"
        return super().format(record)


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure logging for blesim.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stdout (default: True)
        log_file: Optional file path for log output
        simple_format: Use simplified format without timestamps
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    root_logger.handlers.clear()

    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(EmojiFormatter(fmt, datefmt=DATE_FORMAT))
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Advertising %s", service_uuid)
    """
    return logging.getLogger(name)


def has_console() -> bool:
    """Check if running with a console (TTY)."""
    return sys.stdout.isatty()
